from __future__ import annotations

import asyncio

import pytest

from hardened_api.config import HeaderStyle, RateLimitPolicy
from hardened_api.middleware.rate_limit import (
    MemoryWindowStore,
    RedisWindowStore,
    Throttle,
    ThrottleDecision,
    build_throttle,
    client_identity,
    rate_limit_headers,
    window_label,
)


async def test_first_n_admitted_then_rejected_then_reset(clock) -> None:
    policy = RateLimitPolicy(window_ms=1000, max_requests=3)
    throttle = Throttle(policy, clock=clock)

    decisions = [await throttle.admit("A") for _ in range(4)]
    assert [d.admitted for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert all(d.reset_at_ms == clock.now_ms + 1000 for d in decisions)

    clock.advance(1000)
    again = await throttle.admit("A")
    assert again.admitted
    assert again.remaining == 2


async def test_rejected_requests_keep_counting(clock) -> None:
    store = MemoryWindowStore()
    throttle = Throttle(RateLimitPolicy(window_ms=1000, max_requests=1), store=store, clock=clock)
    await throttle.admit("A")
    for _ in range(3):
        clock.advance(100)
        d = await throttle.admit("A")
        assert not d.admitted
    count, _ = await store.hit("A", 1000, clock.now_ms)
    assert count == 5


async def test_identities_are_independent(clock) -> None:
    throttle = Throttle(RateLimitPolicy(window_ms=1000, max_requests=1), clock=clock)
    assert (await throttle.admit("A")).admitted
    assert (await throttle.admit("B")).admitted
    assert not (await throttle.admit("A")).admitted


async def test_concurrent_hits_never_over_admit(clock) -> None:
    throttle = Throttle(RateLimitPolicy(window_ms=1000, max_requests=5), clock=clock)
    results = await asyncio.gather(*(throttle.admit("A") for _ in range(20)))
    assert sum(d.admitted for d in results) == 5


def test_injected_empty_store_is_kept(clock) -> None:
    store = MemoryWindowStore()
    assert len(store) == 0
    throttle = Throttle(RateLimitPolicy(window_ms=1000, max_requests=1), store=store, clock=clock)
    assert throttle.store is store


async def test_idle_counters_are_swept(clock) -> None:
    store = MemoryWindowStore()
    throttle = Throttle(RateLimitPolicy(window_ms=1000, max_requests=5), store=store, clock=clock)
    for ident in ("A", "B", "C"):
        await throttle.admit(ident)
    assert len(store) == 3
    clock.advance(1000)
    await throttle.admit("D")
    assert len(store) == 1


class _BrokenStore:
    async def hit(self, identity, window_ms, now_ms):
        raise ConnectionError("redis down")


async def test_shared_store_failure_falls_back_to_local_counters(clock, caplog) -> None:
    throttle = Throttle(RateLimitPolicy(window_ms=1000, max_requests=2), store=_BrokenStore(), clock=clock)
    with caplog.at_level("WARNING"):
        admitted = [(await throttle.admit("A")).admitted for _ in range(3)]
    assert admitted == [True, True, False]
    assert any("local counters" in r.getMessage() for r in caplog.records)


async def test_memory_store_errors_propagate(clock) -> None:
    class _Exploding(MemoryWindowStore):
        async def hit(self, identity, window_ms, now_ms):
            raise RuntimeError("boom")

    throttle = Throttle(RateLimitPolicy(), store=_Exploding(), clock=clock)
    with pytest.raises(RuntimeError):
        await throttle.admit("A")


# ------------------------------ redis store -----------------------------------


class _FakePipeline:
    def __init__(self, server: "_FakeRedis") -> None:
        self.server = server
        self.ops = []

    async def __aenter__(self) -> "_FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    def incr(self, key):
        self.ops.append(("incr", key))

    def pexpire(self, key, ms, nx=False):
        self.ops.append(("pexpire", key, ms, nx))

    def pttl(self, key):
        self.ops.append(("pttl", key))

    async def execute(self):
        out = []
        for op in self.ops:
            if op[0] == "incr":
                self.server.counts[op[1]] = self.server.counts.get(op[1], 0) + 1
                out.append(self.server.counts[op[1]])
            elif op[0] == "pexpire":
                if op[3] and op[1] in self.server.ttls:
                    out.append(False)
                else:
                    self.server.ttls[op[1]] = op[2]
                    out.append(True)
            else:
                out.append(self.server.ttls.get(op[1], -1))
        return out


class _FakeRedis:
    def __init__(self) -> None:
        self.counts = {}
        self.ttls = {}
        self.transactions = []

    def pipeline(self, transaction=True):
        self.transactions.append(transaction)
        return _FakePipeline(self)


async def test_redis_store_counts_in_one_transaction(clock) -> None:
    fake = _FakeRedis()
    throttle = Throttle(
        RateLimitPolicy(window_ms=60_000, max_requests=2),
        store=RedisWindowStore(fake),
        clock=clock,
    )
    results = [await throttle.admit("10.0.0.1") for _ in range(3)]
    assert [d.admitted for d in results] == [True, True, False]
    assert fake.counts == {"ratelimit:10.0.0.1": 3}
    assert fake.ttls == {"ratelimit:10.0.0.1": 60_000}
    assert fake.transactions == [True, True, True]
    assert results[0].reset_at_ms == clock.now_ms + 60_000


def test_build_throttle_redis_without_url_uses_memory(caplog) -> None:
    with caplog.at_level("WARNING"):
        t = build_throttle(RateLimitPolicy(backend="redis"))
    assert isinstance(t.store, MemoryWindowStore)


def test_build_throttle_redis_with_url() -> None:
    t = build_throttle(RateLimitPolicy(backend="redis", redis_url="redis://localhost:6379/0"))
    assert isinstance(t.store, RedisWindowStore)


# ------------------------------ identity --------------------------------------


@pytest.mark.parametrize(
    "host,expected",
    [
        ("203.0.113.7", "203.0.113.7"),
        ("::ffff:203.0.113.7", "203.0.113.7"),
        ("2001:db8:abcd:12ff::1", "2001:db8:abcd:1200::/56"),
        ("2001:db8:abcd:1234:5678::9", "2001:db8:abcd:1200::/56"),
        (None, "unknown"),
        ("", "unknown"),
        ("testclient", "testclient"),
    ],
)
def test_client_identity(host, expected) -> None:
    assert client_identity(host) == expected


# ------------------------------ headers ---------------------------------------


@pytest.mark.parametrize(
    "ms,label",
    [(900_000, "15min"), (1000, "1sec"), (3_600_000, "1hr"), (86_400_000, "1day"), (1500, "1500ms")],
)
def test_window_label(ms, label) -> None:
    assert window_label(ms) == label


def _decision(admitted=True, remaining=99, now=1_000_000, reset=1_900_000):
    return ThrottleDecision(
        admitted=admitted, limit=100, remaining=remaining, reset_at_ms=reset, now_ms=now
    )


def test_combined_headers() -> None:
    h = rate_limit_headers(_decision(), RateLimitPolicy())
    assert h == {
        "RateLimit-Policy": '"100-in-15min"; q=100; w=900',
        "RateLimit": '"100-in-15min"; r=99; t=900',
    }


def test_legacy_headers() -> None:
    h = rate_limit_headers(_decision(), RateLimitPolicy(header_style=HeaderStyle.LEGACY))
    assert h == {
        "X-RateLimit-Limit": "100",
        "X-RateLimit-Remaining": "99",
        "X-RateLimit-Reset": "1900",
    }


def test_rejection_adds_retry_after() -> None:
    h = rate_limit_headers(
        _decision(admitted=False, remaining=0, now=1_899_500),
        RateLimitPolicy(header_style=HeaderStyle.BOTH),
    )
    assert h["Retry-After"] == "1"
    assert "RateLimit" in h and "X-RateLimit-Limit" in h


# ------------------------------ over HTTP -------------------------------------


def test_fourth_request_in_window_is_429(make_client) -> None:
    client = make_client(rate_limit=RateLimitPolicy(window_ms=1000, max_requests=3))
    statuses = [client.get("/").status_code for _ in range(3)]
    assert statuses == [200, 200, 200]

    r = client.get("/")
    assert r.status_code == 429
    assert r.json() == {"error": "rate limit exceeded"}
    assert r.headers["retry-after"] == "1"
    assert r.headers["ratelimit"] == '"3-in-1sec"; r=0; t=1'
    assert r.headers["x-frame-options"] == "SAMEORIGIN"


def test_window_expiry_admits_again(make_client, clock) -> None:
    client = make_client(rate_limit=RateLimitPolicy(window_ms=1000, max_requests=1))
    assert client.get("/").status_code == 200
    assert client.get("/").status_code == 429
    clock.advance(1000)
    r = client.get("/")
    assert r.status_code == 200
    assert r.headers["ratelimit"] == '"1-in-1sec"; r=0; t=1'


def test_rejected_request_never_reaches_handler(make_client) -> None:
    client = make_client(rate_limit=RateLimitPolicy(window_ms=1000, max_requests=1))
    calls = []

    @client.app.get("/counted")
    async def counted():
        calls.append(1)
        return {"ok": True}

    client.get("/counted")
    r = client.get("/counted")
    assert r.status_code == 429
    assert calls == [1]
