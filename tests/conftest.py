# tests/conftest.py
from __future__ import annotations

import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from starlette.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hardened_api.config import PolicyConfig, RateLimitPolicy, resolve  # noqa: E402
from hardened_api.main import create_app  # noqa: E402
from hardened_api.middleware.rate_limit import Throttle  # noqa: E402


class FakeClock:
    """Millisecond clock the tests advance by hand."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def policy() -> PolicyConfig:
    # pure resolution: nothing from the process env or a stray .env
    return resolve({"APP_ENV": "development"})


@pytest.fixture()
def make_client(clock: FakeClock) -> Callable[..., TestClient]:
    """
    Build a TestClient around an explicit policy.

    ``rate_limit`` overrides the policy's RateLimitPolicy; the throttle always
    runs on the fake clock so window tests never sleep.
    """

    def _make(
        policy: Optional[PolicyConfig] = None,
        *,
        rate_limit: Optional[RateLimitPolicy] = None,
        raise_server_exceptions: bool = True,
        **overrides: Any,
    ) -> TestClient:
        p = policy or resolve({"APP_ENV": "development"})
        if rate_limit is not None:
            overrides["rate_limit"] = rate_limit
        if overrides:
            p = dataclasses.replace(p, **overrides)
        app = create_app(p, throttle=Throttle(p.rate_limit, clock=clock))
        return TestClient(app, raise_server_exceptions=raise_server_exceptions)

    return _make


@pytest.fixture()
def client(make_client) -> TestClient:
    return make_client()


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Minimal asyncio support without requiring pytest-asyncio."""

    test_func = pyfuncitem.obj
    if asyncio.iscoroutinefunction(test_func):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            call_kwargs = {
                name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(test_func(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None
