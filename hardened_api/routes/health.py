from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from hardened_api.config import PolicyConfig
from hardened_api.middleware.security_headers import describe_headers
from hardened_api.telemetry.metrics import render

router = APIRouter(tags=["ops"])


def _policy(request: Request) -> PolicyConfig:
    return request.app.state.policy


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    started = getattr(request.app.state, "started_at", time.monotonic())
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "environment": _policy(request).environment.value,
        "uptime": round(time.monotonic() - started, 3),
    }


@router.get("/metrics")
async def metrics() -> Response:
    data, content_type = render()
    return Response(content=data, media_type=content_type)


@router.get("/security/headers")
async def security_headers(request: Request) -> Dict[str, Any]:
    """Catalogue of the hardened header set; only exposed in development."""
    policy = _policy(request)
    if not policy.is_development:
        raise HTTPException(status_code=404)
    return {
        "environment": policy.environment.value,
        "headers": describe_headers(policy.headers, policy.environment),
    }
