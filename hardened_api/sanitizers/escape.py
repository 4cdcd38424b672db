# hardened_api/sanitizers/escape.py
# Summary: HTML entity escaping and client-facing message scrubbing.
# - escape_html(): the 8-character entity map (& < > " ' / ` =).
# - sanitize_error_message(): redact internals, cap at 200 chars, escape.
# - sanitize_structure(): recursive escape of string values and keys, depth <= 10.
#   Anything nested deeper is returned untouched.

from __future__ import annotations

import re
from typing import Any, Mapping

HTML_ESCAPE_MAP = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}
_ESCAPE_TABLE = str.maketrans(HTML_ESCAPE_MAP)

REDACTED = "[REDACTED]"
MAX_MESSAGE_LENGTH = 200
MAX_DEPTH = 10

_SENSITIVE_PATTERNS = (
    # connection strings first so the path pattern does not eat half of them
    re.compile(r"mongodb(?:\+srv)?://\S+", re.IGNORECASE),
    re.compile(r"postgres(?:ql)?://\S+", re.IGNORECASE),
    re.compile(r"mysql://\S+", re.IGNORECASE),
    re.compile(r"\bat\s+[\w.<>]+\s+\([^)]+\)"),  # stack frames
    re.compile(r'File\s+"[^"]+",\s+line\s+\d+'),  # python tracebacks
    re.compile(r"(?:[A-Za-z]:)?[\\/][\w\-.\\/]+\.[A-Za-z]+"),  # file paths
    re.compile(r"\b(?:SELECT|INSERT|UPDATE|DELETE|FROM|WHERE|DROP|UNION)\b", re.IGNORECASE),
    re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"),  # IPv4
)


def escape_html(text: str) -> str:
    return text.translate(_ESCAPE_TABLE)


def sanitize_error_message(message: Any) -> str:
    if not isinstance(message, str):
        return "Invalid input"
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(REDACTED, sanitized)
    if len(sanitized) > MAX_MESSAGE_LENGTH:
        sanitized = sanitized[:MAX_MESSAGE_LENGTH] + "..."
    return escape_html(sanitized)


def sanitize_structure(value: Any, depth: int = 0) -> Any:
    if depth > MAX_DEPTH:
        return value
    if isinstance(value, str):
        return escape_html(value.strip())
    if isinstance(value, Mapping):
        return {
            escape_html(str(k)): sanitize_structure(v, depth + 1) for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_structure(item, depth + 1) for item in value]
    return value


__all__ = [
    "HTML_ESCAPE_MAP",
    "MAX_DEPTH",
    "MAX_MESSAGE_LENGTH",
    "REDACTED",
    "escape_html",
    "sanitize_error_message",
    "sanitize_structure",
]
