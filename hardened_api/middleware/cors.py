from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from hardened_api.config import OriginSentinel, PolicyConfig

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OriginDecision:
    """What the origin gate grants a request; ``headers`` is emitted verbatim."""

    allowed: bool
    headers: Dict[str, str] = field(default_factory=dict)
    misconfigured: bool = False


_NO_GRANT = OriginDecision(allowed=False)


def is_preflight(method: str, headers: Mapping[str, str]) -> bool:
    return method.upper() == "OPTIONS" and bool(headers.get("access-control-request-method"))


def _normalize(origin: str) -> str:
    return origin.strip().rstrip("/")


def evaluate(
    request_origin: Optional[str], is_preflight: bool, policy: PolicyConfig
) -> OriginDecision:
    """
    Decide the cross-origin grant for one request.

    A missing grant is never fatal at the server: the request still proceeds
    and the browser blocks the read. Credentials are never combined with a
    wildcard grant; such a policy is treated as deny-all.
    """
    allowed = policy.allowed_origins
    if allowed is OriginSentinel.DENY_ALL:
        return _NO_GRANT
    if not request_origin or not request_origin.strip():
        return _NO_GRANT

    cors = policy.cors
    wildcard = "*" in allowed
    if wildcard and cors.allow_credentials:
        _log.warning(
            "CORS policy combines a wildcard origin with credentials; denying origin %r",
            request_origin,
        )
        return OriginDecision(allowed=False, misconfigured=True)

    origin = _normalize(request_origin)
    if wildcard:
        grant = "*"
    elif origin in allowed:
        grant = origin
    else:
        return _NO_GRANT

    headers: Dict[str, str] = {"Access-Control-Allow-Origin": grant}
    if grant != "*":
        headers["Vary"] = "Origin"
    if cors.allow_credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    if is_preflight:
        headers["Access-Control-Allow-Methods"] = ",".join(cors.allowed_methods)
        headers["Access-Control-Allow-Headers"] = ",".join(cors.allowed_headers)
        headers["Access-Control-Max-Age"] = str(cors.preflight_max_age)
    return OriginDecision(allowed=True, headers=headers)


__all__ = ["OriginDecision", "evaluate", "is_preflight"]
