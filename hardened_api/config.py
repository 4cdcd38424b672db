# hardened_api/config.py
# Summary: Environment-driven security policy.
# - Settings: raw env surface (pydantic-settings), lenient numeric/bool coercion.
# - PolicyConfig: frozen, resolved once at startup and passed explicitly.
# - resolve(): pure when given a mapping; falls back to the process env.

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

_log = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

DEV_ALLOWED_ORIGINS: Tuple[str, ...] = ("http://localhost:3000", "https://localhost:3443")

# helmet's default directive set, merged with the server's own overrides
DEFAULT_CSP_DIRECTIVES: Dict[str, Tuple[str, ...]] = {
    "default-src": ("'self'",),
    "base-uri": ("'self'",),
    "font-src": ("'self'", "https:", "data:"),
    "form-action": ("'self'",),
    "frame-ancestors": ("'self'",),
    "img-src": ("'self'", "data:"),
    "object-src": ("'none'",),
    "script-src": ("'self'",),
    "script-src-attr": ("'none'",),
    "style-src": ("'self'", "'unsafe-inline'"),
    "upgrade-insecure-requests": (),
}

REFERRER_POLICIES = frozenset(
    {
        "no-referrer",
        "no-referrer-when-downgrade",
        "origin",
        "origin-when-cross-origin",
        "same-origin",
        "strict-origin",
        "strict-origin-when-cross-origin",
        "unsafe-url",
    }
)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class OriginSentinel(str, Enum):
    DENY_ALL = "deny-all"


DENY_ALL = OriginSentinel.DENY_ALL

AllowedOrigins = Union[Tuple[str, ...], OriginSentinel]


class HeaderStyle(str, Enum):
    COMBINED = "combined"
    LEGACY = "legacy"
    BOTH = "both"


class FrameOption(str, Enum):
    DENY = "deny"
    SAMEORIGIN = "sameorigin"


@dataclass(frozen=True)
class CorsPolicy:
    allowed_methods: Tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "OPTIONS")
    allowed_headers: Tuple[str, ...] = ("Content-Type", "Authorization")
    allow_credentials: bool = True
    preflight_max_age: int = 86400


@dataclass(frozen=True)
class RateLimitPolicy:
    window_ms: int = 900_000
    max_requests: int = 100
    header_style: HeaderStyle = HeaderStyle.COMBINED
    backend: str = "memory"
    redis_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")


@dataclass(frozen=True)
class HeaderPolicy:
    csp_directives: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_CSP_DIRECTIVES)
    )
    hsts_max_age: int = 31_536_000
    hsts_include_subdomains: bool = True
    hsts_preload: bool = True
    referrer_policy: str = "strict-origin-when-cross-origin"
    frame_option: FrameOption = FrameOption.SAMEORIGIN
    cross_origin_embedder_policy: bool = True


@dataclass(frozen=True)
class TlsMaterial:
    private_key_path: str
    certificate_path: str


@dataclass(frozen=True)
class PolicyConfig:
    environment: Environment = Environment.DEVELOPMENT
    allowed_origins: AllowedOrigins = DEV_ALLOWED_ORIGINS
    cors: CorsPolicy = field(default_factory=CorsPolicy)
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    headers: HeaderPolicy = field(default_factory=HeaderPolicy)
    tls: Optional[TlsMaterial] = None
    host: str = "0.0.0.0"
    http_port: int = 3000
    https_port: int = 3443
    max_body_bytes: int = 10 * 1024
    shutdown_timeout_s: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.environment is Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment is Environment.DEVELOPMENT


# ------------------------------- Raw settings ---------------------------------

_POSITIVE_INTS = (
    "RATE_LIMIT_WINDOW_MS",
    "RATE_LIMIT_MAX_REQUESTS",
    "PORT",
    "HTTPS_PORT",
    "MAX_BODY_BYTES",
)
_NON_NEGATIVE_INTS = ("CORS_MAX_AGE", "HSTS_MAX_AGE")
_BOOLS = (
    "CORS_ALLOW_CREDENTIALS",
    "HSTS_INCLUDE_SUBDOMAINS",
    "HSTS_PRELOAD",
    "LOG_JSON",
)


class Settings(BaseSettings):
    # --- Environment ---
    APP_ENV: str = Field(default="development")

    # --- CORS ---
    ALLOWED_ORIGINS: str = Field(default="")  # comma-separated
    CORS_ALLOW_METHODS: str = Field(default="GET,POST,PUT,DELETE,OPTIONS")
    CORS_ALLOW_HEADERS: str = Field(default="Content-Type,Authorization")
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)
    CORS_MAX_AGE: int = Field(default=86400)

    # --- Rate limit ---
    RATE_LIMIT_WINDOW_MS: int = Field(default=900_000)
    RATE_LIMIT_MAX_REQUESTS: int = Field(default=100)
    RATE_LIMIT_HEADER_STYLE: str = Field(default="combined")
    RATE_LIMIT_BACKEND: str = Field(default="memory")  # "memory" | "redis"
    REDIS_URL: Optional[str] = None

    # --- Security headers ---
    CSP_DIRECTIVES: str = Field(default="")  # JSON object
    HSTS_MAX_AGE: int = Field(default=31_536_000)
    HSTS_INCLUDE_SUBDOMAINS: bool = Field(default=True)
    HSTS_PRELOAD: bool = Field(default=True)
    REFERRER_POLICY: str = Field(default="strict-origin-when-cross-origin")
    FRAME_OPTIONS: str = Field(default="sameorigin")

    # --- TLS / listeners ---
    TLS_KEY_PATH: str = Field(default="./certs/server.key")
    TLS_CERT_PATH: str = Field(default="./certs/server.crt")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3000)
    HTTPS_PORT: int = Field(default=3443)
    MAX_BODY_BYTES: int = Field(default=10 * 1024)
    SHUTDOWN_TIMEOUT_S: float = Field(default=10.0)

    # --- Logging ---
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)

    model_config = {
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_ignore_empty": True,
    }

    @field_validator(*_POSITIVE_INTS, mode="before")
    @classmethod
    def _positive_int(cls, value: Any, info: ValidationInfo) -> Any:
        return _coerce_int(value, cls.model_fields[info.field_name].default, minimum=1)

    @field_validator(*_NON_NEGATIVE_INTS, mode="before")
    @classmethod
    def _non_negative_int(cls, value: Any, info: ValidationInfo) -> Any:
        return _coerce_int(value, cls.model_fields[info.field_name].default, minimum=0)

    @field_validator(*_BOOLS, mode="before")
    @classmethod
    def _lenient_bool(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, bool):
            return value
        s = str(value).strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        return cls.model_fields[info.field_name].default

    @field_validator("SHUTDOWN_TIMEOUT_S", mode="before")
    @classmethod
    def _timeout(cls, value: Any) -> Any:
        try:
            v = float(str(value).strip())
        except (TypeError, ValueError):
            return 10.0
        if v != v or v <= 0 or v == float("inf"):
            return 10.0
        return v


def _coerce_int(value: Any, default: int, *, minimum: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        v = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return v if v >= minimum else default


def get_settings() -> Settings:
    return Settings()


class _MappingSettings(Settings):
    """Settings fed only from constructor values; env vars and .env are not read."""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings,)


# ------------------------------- Resolution -----------------------------------


def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(x.strip() for x in (raw or "").split(",") if x.strip())


def _parse_environment(raw: str) -> Environment:
    s = (raw or "").strip().lower()
    if s in {"production", "prod"}:
        return Environment.PRODUCTION
    return Environment.DEVELOPMENT


def _parse_origins(
    raw: str, environment: Environment, allow_credentials: bool
) -> AllowedOrigins:
    origins = tuple(o.rstrip("/") or o for o in _split_csv(raw))
    if not origins:
        if environment is Environment.DEVELOPMENT:
            return DEV_ALLOWED_ORIGINS
        return DENY_ALL
    if "*" in origins and allow_credentials:
        _log.warning(
            "ALLOWED_ORIGINS contains '*' while credentials are allowed; "
            "denying all cross-origin requests"
        )
        return DENY_ALL
    return origins


def _parse_csp(raw: str) -> Dict[str, Tuple[str, ...]]:
    if not raw:
        return dict(DEFAULT_CSP_DIRECTIVES)
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("CSP_DIRECTIVES must be a JSON object")
        out: Dict[str, Tuple[str, ...]] = {}
        for name, tokens in data.items():
            if isinstance(tokens, str):
                tokens = tokens.split()
            if not isinstance(tokens, (list, tuple)):
                raise ValueError(f"directive {name!r} must be a list of sources")
            out[str(name).strip()] = tuple(str(t) for t in tokens)
        return out
    except ValueError as exc:
        _log.warning("invalid CSP_DIRECTIVES, using defaults: %s", exc)
        return dict(DEFAULT_CSP_DIRECTIVES)


def _parse_header_style(raw: str) -> HeaderStyle:
    try:
        return HeaderStyle((raw or "").strip().lower())
    except ValueError:
        _log.warning("unknown RATE_LIMIT_HEADER_STYLE %r, using 'combined'", raw)
        return HeaderStyle.COMBINED


def _parse_frame_option(raw: str) -> FrameOption:
    try:
        return FrameOption((raw or "").strip().lower())
    except ValueError:
        _log.warning("unknown FRAME_OPTIONS %r, using 'sameorigin'", raw)
        return FrameOption.SAMEORIGIN


def _parse_referrer(raw: str) -> str:
    s = (raw or "").strip().lower()
    if s in REFERRER_POLICIES:
        return s
    _log.warning("unknown REFERRER_POLICY %r, using default", raw)
    return "strict-origin-when-cross-origin"


def build_policy(s: Settings) -> PolicyConfig:
    environment = _parse_environment(s.APP_ENV)
    cors = CorsPolicy(
        allowed_methods=tuple(m.upper() for m in _split_csv(s.CORS_ALLOW_METHODS))
        or CorsPolicy.allowed_methods,
        allowed_headers=_split_csv(s.CORS_ALLOW_HEADERS) or CorsPolicy.allowed_headers,
        allow_credentials=s.CORS_ALLOW_CREDENTIALS,
        preflight_max_age=s.CORS_MAX_AGE,
    )
    backend = s.RATE_LIMIT_BACKEND.strip().lower()
    if backend not in {"memory", "redis"}:
        _log.warning("unknown RATE_LIMIT_BACKEND %r, using 'memory'", s.RATE_LIMIT_BACKEND)
        backend = "memory"
    rate_limit = RateLimitPolicy(
        window_ms=s.RATE_LIMIT_WINDOW_MS,
        max_requests=s.RATE_LIMIT_MAX_REQUESTS,
        header_style=_parse_header_style(s.RATE_LIMIT_HEADER_STYLE),
        backend=backend,
        redis_url=s.REDIS_URL,
    )
    headers = HeaderPolicy(
        csp_directives=_parse_csp(s.CSP_DIRECTIVES),
        hsts_max_age=s.HSTS_MAX_AGE,
        hsts_include_subdomains=s.HSTS_INCLUDE_SUBDOMAINS,
        hsts_preload=s.HSTS_PRELOAD,
        referrer_policy=_parse_referrer(s.REFERRER_POLICY),
        frame_option=_parse_frame_option(s.FRAME_OPTIONS),
        cross_origin_embedder_policy=environment is Environment.PRODUCTION,
    )
    tls = TlsMaterial(
        private_key_path=os.path.abspath(s.TLS_KEY_PATH),
        certificate_path=os.path.abspath(s.TLS_CERT_PATH),
    )
    return PolicyConfig(
        environment=environment,
        allowed_origins=_parse_origins(s.ALLOWED_ORIGINS, environment, cors.allow_credentials),
        cors=cors,
        rate_limit=rate_limit,
        headers=headers,
        tls=tls,
        host=s.HOST.strip() or "0.0.0.0",
        http_port=s.PORT,
        https_port=s.HTTPS_PORT,
        max_body_bytes=s.MAX_BODY_BYTES,
        shutdown_timeout_s=s.SHUTDOWN_TIMEOUT_S,
    )


def resolve(environ: Optional[Mapping[str, str]] = None) -> PolicyConfig:
    """
    Resolve the process-wide policy.

    With an explicit mapping this is a pure function of that mapping (no
    process env, no .env file); otherwise the process environment is read.
    Empty values count as absent.
    """
    if environ is None:
        return build_policy(get_settings())
    values = {
        str(k).upper(): v
        for k, v in environ.items()
        if v is not None and str(v).strip() != ""
    }
    return build_policy(_MappingSettings(**values))


__all__ = [
    "DENY_ALL",
    "DEV_ALLOWED_ORIGINS",
    "DEFAULT_CSP_DIRECTIVES",
    "CorsPolicy",
    "Environment",
    "FrameOption",
    "HeaderPolicy",
    "HeaderStyle",
    "OriginSentinel",
    "PolicyConfig",
    "RateLimitPolicy",
    "Settings",
    "TlsMaterial",
    "build_policy",
    "get_settings",
    "resolve",
]
