from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from typing import Optional

# Context variable for request id
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

HEADER = "X-Request-ID"
_MAX_LEN = 128


def get_request_id() -> Optional[str]:
    """
    Return the current request id (if any) set by the security pipeline.
    """
    return _REQUEST_ID.get()


def ingest(raw_header: Optional[str]) -> str:
    """
    Accept an incoming X-Request-ID if it is printable ASCII and short enough;
    otherwise generate a new UUID4.
    """
    if raw_header is not None:
        trimmed = raw_header.strip()
        if trimmed and len(trimmed) <= _MAX_LEN and trimmed.isascii() and trimmed.isprintable():
            return trimmed
    return str(uuid.uuid4())


def bind(rid: str) -> Token[Optional[str]]:
    return _REQUEST_ID.set(rid)


def reset(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)
