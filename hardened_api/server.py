# hardened_api/server.py
# Summary: Process entry point.
# - TLS material is loaded and checked once, before any socket is bound.
# - With TLS: HTTPS on HTTPS_PORT plus a 301 redirect listener on PORT.
# - Without TLS (development only): plain HTTP on PORT.
# - SIGTERM/SIGINT drain every listener; a watchdog force-exits after the timeout.

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import signal
import ssl
from typing import Any, Dict, Iterator, List, Optional

import uvicorn
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from hardened_api.config import PolicyConfig, TlsMaterial, build_policy, get_settings
from hardened_api.errors import ConfigurationError
from hardened_api.main import create_app
from hardened_api.telemetry.logging import configure_logging

_log = logging.getLogger(__name__)

WATCHDOG_GRACE_S = 1.0


def load_tls_material(policy: PolicyConfig) -> Optional[TlsMaterial]:
    """
    Check that the key/cert pair exists and parses.

    Production refuses to start without it; development logs a warning and
    falls back to plain HTTP (returns None).
    """
    tls = policy.tls
    problem: Optional[str] = None
    if tls is None:
        problem = "no TLS key/certificate configured"
    else:
        missing = [p for p in (tls.private_key_path, tls.certificate_path) if not os.path.isfile(p)]
        if missing:
            problem = "TLS material not found: " + ", ".join(missing)
        else:
            try:
                ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
                ctx.load_cert_chain(tls.certificate_path, tls.private_key_path)
            except OSError as exc:  # includes ssl.SSLError
                problem = f"TLS material unusable: {exc}"

    if problem is None:
        return tls
    if policy.is_production:
        raise ConfigurationError(problem)
    _log.warning("%s; serving plain HTTP (development only)", problem)
    return None


class RedirectToHttps:
    """Answers every request with a 301 to the same path on the HTTPS listener."""

    def __init__(self, https_port: int) -> None:
        self.https_port = https_port

    def target(self, request: Request) -> str:
        host = request.url.hostname or "localhost"
        if ":" in host:
            host = f"[{host}]"
        url = f"https://{host}:{self.https_port}{request.url.path}"
        if request.url.query:
            url += f"?{request.url.query}"
        return url

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return
        location = self.target(Request(scope))
        response = PlainTextResponse(
            f"Moved Permanently. Redirecting to {location}",
            status_code=301,
            headers={"Location": location},
        )
        await response(scope, receive, send)


class _Server(uvicorn.Server):
    """uvicorn server whose signals are handled once for all listeners."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _uvicorn_config(app: ASGIApp, policy: PolicyConfig, port: int, **extra: Any) -> uvicorn.Config:
    kwargs: Dict[str, Any] = {
        "host": policy.host,
        "port": port,
        "server_header": False,
        "access_log": False,
        "log_config": None,
        "timeout_graceful_shutdown": max(1, math.ceil(policy.shutdown_timeout_s)),
    }
    kwargs.update(extra)
    return uvicorn.Config(app, **kwargs)


def build_servers(
    policy: PolicyConfig, app: ASGIApp, tls: Optional[TlsMaterial]
) -> List[uvicorn.Server]:
    if tls is None:
        return [_Server(_uvicorn_config(app, policy, policy.http_port))]
    return [
        _Server(
            _uvicorn_config(
                app,
                policy,
                policy.https_port,
                ssl_keyfile=tls.private_key_path,
                ssl_certfile=tls.certificate_path,
            )
        ),
        _Server(
            _uvicorn_config(
                RedirectToHttps(policy.https_port), policy, policy.http_port, lifespan="off"
            )
        ),
    ]


async def serve(policy: PolicyConfig, tls: Optional[TlsMaterial]) -> None:
    servers = build_servers(policy, create_app(policy), tls)
    stopping = asyncio.Event()

    def _on_signal(name: str) -> None:
        if stopping.is_set():
            _log.warning("second %s, forcing exit", name)
            for s in servers:
                s.force_exit = True
            return
        _log.info("received %s, draining in-flight requests", name)
        stopping.set()
        for s in servers:
            s.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except NotImplementedError:  # pragma: no cover - windows
            signal.signal(sig, lambda *_a, _n=sig.name: loop.call_soon_threadsafe(_on_signal, _n))

    async def _watchdog() -> None:
        await stopping.wait()
        await asyncio.sleep(policy.shutdown_timeout_s + WATCHDOG_GRACE_S)
        _log.error("shutdown exceeded %.0fs, forcing exit", policy.shutdown_timeout_s)
        for s in servers:
            s.force_exit = True

    watchdog = asyncio.create_task(_watchdog())
    if tls is None:
        _log.info("listening on http://%s:%d", policy.host, policy.http_port)
    else:
        _log.info(
            "listening on https://%s:%d (redirect from :%d)",
            policy.host,
            policy.https_port,
            policy.http_port,
        )
    try:
        await asyncio.gather(*(s.serve() for s in servers))
    finally:
        watchdog.cancel()
    _log.info("all listeners closed")


def main() -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, json_lines=settings.LOG_JSON)
    policy = build_policy(settings)
    try:
        tls = load_tls_material(policy)
    except ConfigurationError as exc:
        _log.critical("refusing to start: %s", exc)
        return 1
    asyncio.run(serve(policy, tls))
    return 0


__all__ = ["RedirectToHttps", "build_servers", "load_tls_material", "main", "serve"]
