# hardened_api/errors.py
# Summary: Error taxonomy and the JSON bodies clients see.
# - Configuration errors are startup-only and never reach a client.
# - Client errors (400/404/413) carry structured, scrubbed bodies.
# - Unexpected errors are rendered by the pipeline catch-all (internal_error_body).

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse

from hardened_api.sanitizers.escape import sanitize_error_message
from hardened_api.sanitizers.fields import FieldError, ValidationOutcome
from hardened_api.telemetry.metrics import inc_validation_failure

_log = logging.getLogger(__name__)

GENERIC_500_MESSAGE = "An unexpected error occurred. Please try again later."
NOT_FOUND_MESSAGE = "The requested resource does not exist."


class ConfigurationError(RuntimeError):
    """Startup configuration is unusable (e.g. production TLS material missing)."""


class InputValidationError(Exception):
    def __init__(self, outcome: ValidationOutcome) -> None:
        super().__init__("Validation failed")
        self.outcome = outcome


class PayloadTooLarge(Exception):
    def __init__(self, limit: int) -> None:
        super().__init__(f"request body exceeds {limit} bytes")
        self.limit = limit


class MalformedBody(Exception):
    pass


class ClientDisconnected(Exception):
    pass


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def validation_failure_body(outcome: ValidationOutcome) -> Dict[str, Any]:
    return {
        "success": False,
        "error": "Validation failed",
        "details": [
            {
                "field": err.field,
                "message": sanitize_error_message(err.message),
                "location": err.location,
            }
            for err in outcome.errors
        ],
        "timestamp": _timestamp(),
    }


def not_found_body(path: str) -> Dict[str, Any]:
    return {"error": "Not Found", "message": NOT_FOUND_MESSAGE, "path": path}


def payload_too_large_body(limit: int) -> Dict[str, Any]:
    return {
        "error": "Payload Too Large",
        "message": f"Request body must not exceed {limit} bytes.",
    }


def internal_error_body(
    exc: BaseException, *, production: bool, request_id: Optional[str]
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": "Internal Server Error"}
    if production:
        body["message"] = GENERIC_500_MESSAGE
    else:
        body["message"] = str(exc) or type(exc).__name__
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    if request_id:
        body["requestId"] = request_id
    return body


# ------------------------------ Handlers --------------------------------------


async def _on_input_validation(request: Request, exc: InputValidationError) -> JSONResponse:
    inc_validation_failure()
    _log.info(
        "validation failed on %s %s: %s",
        request.method,
        request.url.path,
        ", ".join(err.field for err in exc.outcome.errors),
    )
    return JSONResponse(validation_failure_body(exc.outcome), status_code=400)


async def _on_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for item in exc.errors():
        loc = [str(p) for p in item.get("loc", ())]
        where = {"path": "params"}.get(loc[0], loc[0]) if loc else "body"
        errors.append(
            FieldError(
                field=loc[-1] if len(loc) > 1 else "unknown",
                message=str(item.get("msg", "Invalid input")),
                location=where,
            )
        )
    return await _on_input_validation(request, InputValidationError(ValidationOutcome(tuple(errors))))


async def _on_payload_too_large(request: Request, exc: PayloadTooLarge) -> JSONResponse:
    _log.info("payload too large on %s %s", request.method, request.url.path)
    return JSONResponse(payload_too_large_body(exc.limit), status_code=413)


async def _on_malformed_body(request: Request, exc: MalformedBody) -> JSONResponse:
    _log.info("malformed body on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        {"error": "Bad Request", "message": "Malformed JSON body"}, status_code=400
    )


async def _on_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # unknown method on a known path is reported as an unknown resource
    if exc.status_code in (404, 405):
        return JSONResponse(not_found_body(request.url.path), status_code=404)
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        {"error": detail, "message": sanitize_error_message(detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InputValidationError, _on_input_validation)
    app.add_exception_handler(RequestValidationError, _on_request_validation)
    app.add_exception_handler(PayloadTooLarge, _on_payload_too_large)
    app.add_exception_handler(MalformedBody, _on_malformed_body)
    app.add_exception_handler(StarletteHTTPException, _on_http_exception)


__all__ = [
    "ClientDisconnected",
    "ConfigurationError",
    "GENERIC_500_MESSAGE",
    "InputValidationError",
    "MalformedBody",
    "PayloadTooLarge",
    "install_error_handlers",
    "internal_error_body",
    "not_found_body",
    "payload_too_large_body",
    "validation_failure_body",
]
