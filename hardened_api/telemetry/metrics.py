from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, generate_latest

REQUESTS = Counter(
    "hardened_requests_total",
    "Responses sent by the security pipeline, by status code.",
    ["status"],
)
RATE_LIMITED = Counter(
    "hardened_rate_limited_total",
    "Requests rejected by the throttle.",
)
CORS_DENIED = Counter(
    "hardened_cors_denied_total",
    "Cross-origin requests that received no allow-origin grant.",
)
VALIDATION_FAILURES = Counter(
    "hardened_validation_failures_total",
    "Requests rejected by declared field validation.",
)


def inc_request(status: int) -> None:
    REQUESTS.labels(status=str(status)).inc()


def inc_rate_limited() -> None:
    RATE_LIMITED.inc()


def inc_cors_denied() -> None:
    CORS_DENIED.inc()


def inc_validation_failure() -> None:
    VALIDATION_FAILURES.inc()


def render() -> tuple[bytes, str]:
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "CORS_DENIED",
    "RATE_LIMITED",
    "REQUESTS",
    "VALIDATION_FAILURES",
    "inc_cors_denied",
    "inc_rate_limited",
    "inc_request",
    "inc_validation_failure",
    "render",
]
