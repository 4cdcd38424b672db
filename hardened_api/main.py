from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import FastAPI

from hardened_api import __version__
from hardened_api.config import PolicyConfig, resolve
from hardened_api.errors import install_error_handlers
from hardened_api.middleware.pipeline import install_security_pipeline
from hardened_api.middleware.rate_limit import Throttle
from hardened_api.routes import greetings, health

_log = logging.getLogger(__name__)


def create_app(
    policy: Optional[PolicyConfig] = None, *, throttle: Optional[Throttle] = None
) -> FastAPI:
    """
    Build the ASGI app around one resolved policy.

    Tests pass an explicit ``policy`` (and optionally a ``throttle`` with a
    fake clock); the server resolves it once from the environment.
    """
    policy = policy or resolve()
    app = FastAPI(
        title="Hardened API",
        version=__version__,
        # interactive docs need inline scripts the CSP forbids
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.policy = policy
    app.state.started_at = time.monotonic()

    install_error_handlers(app)
    app.include_router(greetings.router)
    app.include_router(health.router)
    install_security_pipeline(app, policy, throttle)

    _log.debug(
        "app created for %s (origins=%s)",
        policy.environment.value,
        getattr(policy.allowed_origins, "value", policy.allowed_origins),
    )
    return app
