# hardened_api/sanitizers/fields.py
# Summary: Declarative per-field validation for route inputs.
# - ValidationRule: immutable, declared once per route.
# - validate(): all-or-nothing; on any error no sanitized value is returned.
# - Each field reports at most one error (the first check it fails).

from __future__ import annotations

import ipaddress
import math
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

from email_validator import EmailNotValidError, validate_email

from hardened_api.sanitizers.escape import escape_html

MAX_EMAIL_LENGTH = 254
MAX_URL_LENGTH = 2048
MAX_SAFE_INTEGER = 2**53 - 1

_UUID_V4 = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_HOST_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_TRUE_STRINGS = {"true", "1"}
_FALSE_STRINGS = {"false", "0"}


class FieldKind(str, Enum):
    STRING = "string"
    EMAIL = "email"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    UUID = "uuid"
    URL = "url"
    ARRAY = "array"


class Location(str, Enum):
    BODY = "body"
    QUERY = "query"
    PARAMS = "params"


Number = Union[int, float]


@dataclass(frozen=True)
class ValidationRule:
    field: str
    kind: FieldKind = FieldKind.STRING
    location: Location = Location.BODY
    required: bool = True
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    minimum: Optional[Number] = None
    maximum: Optional[Number] = None
    schemes: Tuple[str, ...] = ("http", "https")
    min_items: int = 0
    max_items: int = 100

    def __post_init__(self) -> None:
        for name in ("min_length", "max_length"):
            v = getattr(self, name)
            if v is not None and v < 0:
                raise ValueError(f"{name} must be non-negative")
        if (
            self.min_length is not None
            and self.max_length is not None
            and self.min_length > self.max_length
        ):
            raise ValueError("min_length cannot be greater than max_length")
        if (
            self.minimum is not None
            and self.maximum is not None
            and self.minimum > self.maximum
        ):
            raise ValueError("minimum cannot be greater than maximum")
        if self.min_items < 0 or self.min_items > self.max_items:
            raise ValueError("invalid array length bounds")
        if not self.schemes:
            raise ValueError("schemes must not be empty")


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str
    location: str

    def as_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message, "location": self.location}


@dataclass(frozen=True)
class ValidationOutcome:
    errors: Tuple[FieldError, ...] = ()
    sanitized: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RequestValues:
    """Raw inputs of one request, split by where they came from."""

    body: Mapping[str, Any] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)

    def source(self, location: Location) -> Mapping[str, Any]:
        if location is Location.QUERY:
            return self.query
        if location is Location.PARAMS:
            return self.params
        return self.body


class _Invalid(Exception):
    pass


_MISSING = object()


# ------------------------------- Coercion -------------------------------------


def _string(rule: ValidationRule, value: Any) -> str:
    name = rule.field
    if not isinstance(value, str):
        raise _Invalid(f"{name} must be a string")
    text = value.strip()
    if not text and rule.required:
        raise _Invalid(f"{name} cannot be empty")
    lo, hi = rule.min_length, rule.max_length
    if lo is not None and hi is not None:
        if not lo <= len(text) <= hi:
            raise _Invalid(f"{name} must be between {lo} and {hi} characters")
    elif hi is not None and len(text) > hi:
        raise _Invalid(f"{name} must not exceed {hi} characters")
    elif lo is not None and len(text) < lo:
        raise _Invalid(f"{name} must be at least {lo} characters")
    return escape_html(text)


def _email(rule: ValidationRule, value: Any) -> str:
    name = rule.field
    if not isinstance(value, str):
        raise _Invalid(f"{name} must be a string")
    text = value.strip().lower()
    if len(text) > MAX_EMAIL_LENGTH:
        raise _Invalid(f"{name} must not exceed {MAX_EMAIL_LENGTH} characters")
    try:
        validate_email(text, check_deliverability=False)
    except EmailNotValidError:
        raise _Invalid(f"{name} must be a valid email address") from None
    return text


def _bounds(rule: ValidationRule) -> Tuple[Number, Number]:
    lo = rule.minimum if rule.minimum is not None else -MAX_SAFE_INTEGER
    hi = rule.maximum if rule.maximum is not None else MAX_SAFE_INTEGER
    return lo, hi


def _integer(rule: ValidationRule, value: Any) -> int:
    lo, hi = _bounds(rule)
    message = f"{rule.field} must be an integer between {lo} and {hi}"
    if isinstance(value, bool):
        raise _Invalid(message)
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise _Invalid(f"{rule.field} must be a finite number")
        if not value.is_integer():
            raise _Invalid(message)
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError:
            raise _Invalid(message) from None
    else:
        raise _Invalid(message)
    if not lo <= number <= hi:
        raise _Invalid(message)
    return number


def _float(rule: ValidationRule, value: Any) -> float:
    lo, hi = _bounds(rule)
    message = f"{rule.field} must be a number between {lo} and {hi}"
    if isinstance(value, bool):
        raise _Invalid(message)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise _Invalid(message) from None
    else:
        raise _Invalid(message)
    if not math.isfinite(number):
        raise _Invalid(f"{rule.field} must be a finite number")
    if not lo <= number <= hi:
        raise _Invalid(message)
    return number


def _boolean(rule: ValidationRule, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return value == 1
    if isinstance(value, str):
        if value in _TRUE_STRINGS:
            return True
        if value in _FALSE_STRINGS:
            return False
    raise _Invalid(f"{rule.field} must be a boolean")


def _uuid(rule: ValidationRule, value: Any) -> str:
    if not isinstance(value, str) or not _UUID_V4.match(value.strip()):
        raise _Invalid(f"{rule.field} must be a valid UUID")
    return str(uuid.UUID(value.strip()))


def _valid_host(host: str) -> bool:
    if not host:
        return False
    if ":" in host:
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            return False
        return True
    labels = host.rstrip(".").split(".")
    return all(_HOST_LABEL.match(label) for label in labels)


def _url(rule: ValidationRule, value: Any) -> str:
    name = rule.field
    if not isinstance(value, str):
        raise _Invalid(f"{name} must be a string")
    text = value.strip()
    message = f"{name} must be a valid URL with protocol: {' or '.join(rule.schemes)}"
    try:
        parts = urlsplit(text)
        port = parts.port  # raises on a malformed port
    except ValueError:
        raise _Invalid(message) from None
    host = parts.hostname or ""
    if port is not None and not 0 < port < 65536:
        raise _Invalid(message)
    if (
        parts.scheme.lower() not in rule.schemes
        or "://" not in text
        or any(ch.isspace() for ch in text)
        or not _valid_host(host)
    ):
        raise _Invalid(message)
    if len(text) > MAX_URL_LENGTH:
        raise _Invalid(f"{name} must not exceed {MAX_URL_LENGTH} characters")
    return text


def _array(rule: ValidationRule, value: Any) -> List[Any]:
    if not isinstance(value, (list, tuple)) or not (
        rule.min_items <= len(value) <= rule.max_items
    ):
        raise _Invalid(
            f"{rule.field} must be an array with {rule.min_items}-{rule.max_items} items"
        )
    return list(value)


_COERCERS = {
    FieldKind.STRING: _string,
    FieldKind.EMAIL: _email,
    FieldKind.INTEGER: _integer,
    FieldKind.FLOAT: _float,
    FieldKind.BOOLEAN: _boolean,
    FieldKind.UUID: _uuid,
    FieldKind.URL: _url,
    FieldKind.ARRAY: _array,
}


def _is_absent(rule: ValidationRule, raw: Any) -> bool:
    if raw is _MISSING or raw is None:
        return True
    # optional fields treat blank strings as not supplied
    return not rule.required and isinstance(raw, str) and not raw.strip()


def validate(values: RequestValues, rules: Sequence[ValidationRule]) -> ValidationOutcome:
    errors: List[FieldError] = []
    sanitized: Dict[str, Any] = {}
    for rule in rules:
        raw = values.source(rule.location).get(rule.field, _MISSING)
        if _is_absent(rule, raw):
            if rule.required:
                errors.append(
                    FieldError(rule.field, f"{rule.field} is required", rule.location.value)
                )
            else:
                sanitized[rule.field] = None
            continue
        try:
            sanitized[rule.field] = _COERCERS[rule.kind](rule, raw)
        except _Invalid as exc:
            errors.append(FieldError(rule.field, str(exc), rule.location.value))
    if errors:
        return ValidationOutcome(errors=tuple(errors))
    return ValidationOutcome(sanitized=sanitized)


__all__ = [
    "FieldError",
    "FieldKind",
    "Location",
    "RequestValues",
    "ValidationOutcome",
    "ValidationRule",
    "validate",
]
