# hardened_api/middleware/pipeline.py
# Summary: The request gate, as one pure-ASGI middleware with named stages.
#   HEADER_ATTACH -> ORIGIN_CHECK -> THROTTLE_CHECK -> BODY_LIMIT -> HANDLER
# - Hardened headers are bound to `send` before any stage runs, so every
#   response (short-circuit, 404, 500) carries them.
# - Field validation runs inside the handler stage as a route dependency.
# - Unhandled handler errors become a 500 here; nothing is swallowed silently.

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI
from starlette.datastructures import MutableHeaders
from starlette.requests import ClientDisconnect, Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from hardened_api.config import PolicyConfig
from hardened_api.errors import ClientDisconnected, internal_error_body, payload_too_large_body
from hardened_api.middleware import cors, request_id
from hardened_api.middleware.rate_limit import (
    REJECTION_BODY,
    Throttle,
    build_throttle,
    client_identity,
    rate_limit_headers,
)
from hardened_api.middleware.security_headers import headers_for, strip_identifying_headers
from hardened_api.telemetry.logging import log_access
from hardened_api.telemetry.metrics import inc_cors_denied, inc_rate_limited, inc_request

_log = logging.getLogger(__name__)


class Stage(str, Enum):
    HEADER_ATTACH = "header_attach"
    ORIGIN_CHECK = "origin_check"
    THROTTLE_CHECK = "throttle_check"
    BODY_LIMIT = "body_limit"
    HANDLER = "handler"


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


class SecurityPipelineMiddleware:
    def __init__(
        self, app: ASGIApp, policy: PolicyConfig, throttle: Optional[Throttle] = None
    ) -> None:
        self.app = app
        self.policy = policy
        self.throttle = throttle or build_throttle(policy.rate_limit)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        request = Request(scope)
        rid = request_id.ingest(request.headers.get(request_id.HEADER))
        token = request_id.bind(rid)

        # Stage: HEADER_ATTACH
        hardened = headers_for(self.policy.headers, self.policy.environment)
        granted: Dict[str, str] = {request_id.HEADER: rid}
        state: Dict[str, Any] = {"status": 0}

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                headers = MutableHeaders(scope=message)
                strip_identifying_headers(headers)
                for name, value in hardened.items():
                    headers[name] = value
                for name, value in granted.items():
                    if name == "Vary":
                        headers.add_vary_header(value)
                    else:
                        headers[name] = value
                state["status"] = message["status"]
            await send(message)

        client = client_identity(scope["client"][0] if scope.get("client") else None)
        try:
            await self._run(scope, receive, send_wrapper, request, client, granted, state)
        finally:
            status = state["status"]
            if status:
                inc_request(status)
                log_access(
                    request.method,
                    request.url.path,
                    status,
                    (time.perf_counter() - started) * 1000.0,
                    client,
                )
            request_id.reset(token)

    async def _run(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        request: Request,
        client: str,
        granted: Dict[str, str],
        state: Dict[str, Any],
    ) -> None:
        policy = self.policy

        # Stage: ORIGIN_CHECK
        origin = request.headers.get("origin")
        preflight = cors.is_preflight(request.method, request.headers)
        decision = cors.evaluate(origin, preflight, policy)
        granted.update(decision.headers)
        if origin and not decision.allowed:
            inc_cors_denied()
            _log.info("no cross-origin grant for origin %r on %s", origin, request.url.path)
        if preflight:
            await self._short_circuit(
                Stage.ORIGIN_CHECK, Response(status_code=204), scope, receive, send
            )
            return

        # Stage: THROTTLE_CHECK
        verdict = await self.throttle.admit(client)
        granted.update(rate_limit_headers(verdict, policy.rate_limit))
        if not verdict.admitted:
            inc_rate_limited()
            _log.warning("rate limit exceeded for %s on %s", client, request.url.path)
            await self._short_circuit(
                Stage.THROTTLE_CHECK,
                JSONResponse(REJECTION_BODY, status_code=429),
                scope,
                receive,
                send,
            )
            return

        # Stage: BODY_LIMIT
        declared = _declared_length(request)
        if declared is not None and declared > policy.max_body_bytes:
            _log.info("declared body of %d bytes over limit on %s", declared, request.url.path)
            await self._short_circuit(
                Stage.BODY_LIMIT,
                JSONResponse(payload_too_large_body(policy.max_body_bytes), status_code=413),
                scope,
                receive,
                send,
            )
            return

        # Stage: HANDLER
        try:
            await self.app(scope, receive, send)
        except (ClientDisconnect, ClientDisconnected):
            _log.info("client disconnected during %s %s", request.method, request.url.path)
        except Exception as exc:
            _log.exception("unhandled error on %s %s", request.method, request.url.path)
            if state["status"]:
                # headers already went out; let the server close the connection
                raise
            body = internal_error_body(
                exc, production=policy.is_production, request_id=request_id.get_request_id()
            )
            await JSONResponse(body, status_code=500)(scope, receive, send)

    async def _short_circuit(
        self, stage: Stage, response: Response, scope: Scope, receive: Receive, send: Send
    ) -> None:
        _log.debug("short-circuit at %s with %d", stage.value, response.status_code)
        await response(scope, receive, send)


def install_security_pipeline(
    app: FastAPI, policy: PolicyConfig, throttle: Optional[Throttle] = None
) -> Throttle:
    """Install the pipeline as the outermost user middleware; returns its throttle."""
    throttle = throttle or build_throttle(policy.rate_limit)
    app.state.throttle = throttle
    app.add_middleware(SecurityPipelineMiddleware, policy=policy, throttle=throttle)
    return throttle


__all__ = ["SecurityPipelineMiddleware", "Stage", "install_security_pipeline"]
