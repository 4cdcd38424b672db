from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, Mapping
from urllib.parse import parse_qsl

from fastapi import Request

from hardened_api.errors import (
    ClientDisconnected,
    InputValidationError,
    MalformedBody,
    PayloadTooLarge,
)
from hardened_api.sanitizers.escape import sanitize_structure
from hardened_api.sanitizers.fields import Location, RequestValues, ValidationRule, validate

_FORM_TYPE = "application/x-www-form-urlencoded"


async def read_body(request: Request, limit: int) -> Mapping[str, Any]:
    """
    Parse a JSON object or urlencoded form body, reading at most ``limit`` bytes.

    The declared Content-Length was already checked by the pipeline; this
    bounds chunked uploads that declare nothing.
    """
    buf = bytearray()
    async for chunk in request.stream():
        buf.extend(chunk)
        if len(buf) > limit:
            raise PayloadTooLarge(limit)
    if await request.is_disconnected():
        raise ClientDisconnected(f"{request.method} {request.url.path}")
    if not buf.strip():
        return {}

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type == _FORM_TYPE:
        try:
            text = buf.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedBody("form body is not utf-8") from None
        return dict(parse_qsl(text, keep_blank_values=True))

    try:
        data = json.loads(bytes(buf))
    except ValueError as exc:
        raise MalformedBody(str(exc)) from None
    if not isinstance(data, dict):
        raise MalformedBody("JSON body must be an object")
    return data


def validated_fields(*rules: ValidationRule) -> Callable[[Request], Awaitable[Dict[str, Any]]]:
    """
    FastAPI dependency factory: declare the route's field rules once, get the
    sanitized values (or a 400 validation envelope) per request.
    """
    declared = tuple(rules)
    wants_body = any(r.location is Location.BODY for r in declared)

    async def _dependency(request: Request) -> Dict[str, Any]:
        body: Mapping[str, Any] = {}
        if wants_body:
            body = await read_body(request, request.app.state.policy.max_body_bytes)
        values = RequestValues(
            body=body,
            query=dict(request.query_params),
            params=dict(request.path_params),
        )
        outcome = validate(values, declared)
        if not outcome.ok:
            raise InputValidationError(outcome)
        return outcome.sanitized

    return _dependency


async def sanitized_body(request: Request) -> Dict[str, Any]:
    """Whole request body with every string trimmed and entity-escaped."""
    body = await read_body(request, request.app.state.policy.max_body_bytes)
    return sanitize_structure(body)


__all__ = ["read_body", "sanitized_body", "validated_fields"]
