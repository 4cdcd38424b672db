from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Protocol, Tuple

from hardened_api.config import HeaderStyle, RateLimitPolicy

if TYPE_CHECKING:  # pragma: no cover
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any

_log = logging.getLogger(__name__)

IPV6_SUBNET_BITS = 56
REJECTION_BODY = {"error": "rate limit exceeded"}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ClientWindowCounter:
    identity: str
    window_start_ms: int
    count: int = 0


@dataclass(frozen=True)
class ThrottleDecision:
    admitted: bool
    limit: int
    remaining: int
    reset_at_ms: int
    now_ms: int

    @property
    def reset_in_s(self) -> int:
        return max(0, math.ceil((self.reset_at_ms - self.now_ms) / 1000))

    @property
    def retry_after_s(self) -> int:
        return max(1, self.reset_in_s)


class WindowStore(Protocol):
    async def hit(self, identity: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        """Count one request; return ``(count, window_start_ms)`` after the increment."""
        ...


# ------------------------------- Stores ---------------------------------------


class MemoryWindowStore:
    """
    Per-process fixed-window counters.

    The increment-and-read runs under one asyncio lock, so two concurrent
    requests from the same identity can never both observe the pre-increment
    count. Counters idle for a full window are swept at most once per window.
    """

    def __init__(self) -> None:
        self._counters: Dict[str, ClientWindowCounter] = {}
        self._lock = asyncio.Lock()
        self._last_sweep_ms = 0

    def __len__(self) -> int:
        return len(self._counters)

    async def hit(self, identity: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        async with self._lock:
            self._sweep(window_ms, now_ms)
            counter = self._counters.get(identity)
            if counter is None or now_ms - counter.window_start_ms >= window_ms:
                counter = ClientWindowCounter(identity=identity, window_start_ms=now_ms)
                self._counters[identity] = counter
            counter.count += 1
            return counter.count, counter.window_start_ms

    def _sweep(self, window_ms: int, now_ms: int) -> None:
        if now_ms - self._last_sweep_ms < window_ms:
            return
        self._last_sweep_ms = now_ms
        expired = [
            key
            for key, counter in self._counters.items()
            if now_ms - counter.window_start_ms >= window_ms
        ]
        for key in expired:
            del self._counters[key]


class RedisWindowStore:
    """
    Shared fixed-window counters for multi-instance deployments.

    INCR, PEXPIRE NX and PTTL run in one MULTI/EXEC transaction; the key
    expiry doubles as the eviction policy.
    """

    def __init__(self, client: RedisClient, *, prefix: str = "ratelimit:") -> None:
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisWindowStore":
        from redis.asyncio import from_url

        return cls(from_url(url, encoding="utf-8", decode_responses=True))

    async def hit(self, identity: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        key = f"{self._prefix}{identity}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.pexpire(key, window_ms, nx=True)
            pipe.pttl(key)
            count, _, ttl = await pipe.execute()
        ttl_ms = int(ttl)
        if ttl_ms < 0:
            ttl_ms = window_ms
        return int(count), now_ms + ttl_ms - window_ms


# ------------------------------- Throttle -------------------------------------


class Throttle:
    """Fixed-window admit/reject decisions over a pluggable counter store."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        store: Optional[WindowStore] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.policy = policy
        self.store: WindowStore = store if store is not None else MemoryWindowStore()
        self._clock = clock or _now_ms
        self._fallback: Optional[MemoryWindowStore] = None

    async def admit(self, identity: str) -> ThrottleDecision:
        now = int(self._clock())
        window = self.policy.window_ms
        try:
            count, window_start = await self.store.hit(identity, window, now)
        except Exception as exc:
            if isinstance(self.store, MemoryWindowStore):
                raise
            # shared store unreachable: keep enforcing per process
            _log.warning("rate-limit store failed, using local counters: %s", exc)
            if self._fallback is None:
                self._fallback = MemoryWindowStore()
            count, window_start = await self._fallback.hit(identity, window, now)

        limit = self.policy.max_requests
        # the rejected request still counts, so hammering does not extend the budget
        return ThrottleDecision(
            admitted=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at_ms=window_start + window,
            now_ms=now,
        )


def build_throttle(policy: RateLimitPolicy) -> Throttle:
    if policy.backend == "redis":
        if policy.redis_url:
            return Throttle(policy, RedisWindowStore.from_url(policy.redis_url))
        _log.warning("RATE_LIMIT_BACKEND=redis without REDIS_URL; using memory store")
    return Throttle(policy)


# ------------------------------- Identity -------------------------------------


def client_identity(host: Optional[str]) -> str:
    """
    Key for the counter store: the peer address, with IPv6 clients collapsed
    to their /56 so one allocation cannot rotate through addresses.
    """
    if not host or not host.strip():
        return "unknown"
    raw = host.strip()
    try:
        ip = ipaddress.ip_address(raw)
    except ValueError:
        return raw
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped)
        return str(ipaddress.ip_network(f"{ip}/{IPV6_SUBNET_BITS}", strict=False))
    return str(ip)


# ------------------------------- Headers --------------------------------------


def window_label(window_ms: int) -> str:
    for unit_ms, suffix in ((86_400_000, "day"), (3_600_000, "hr"), (60_000, "min"), (1000, "sec")):
        if window_ms % unit_ms == 0:
            return f"{window_ms // unit_ms}{suffix}"
    return f"{window_ms}ms"


def rate_limit_headers(decision: ThrottleDecision, policy: RateLimitPolicy) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    style = policy.header_style
    if style in (HeaderStyle.COMBINED, HeaderStyle.BOTH):
        name = f'"{decision.limit}-in-{window_label(policy.window_ms)}"'
        window_s = max(1, math.ceil(policy.window_ms / 1000))
        headers["RateLimit-Policy"] = f"{name}; q={decision.limit}; w={window_s}"
        headers["RateLimit"] = f"{name}; r={decision.remaining}; t={decision.reset_in_s}"
    if style in (HeaderStyle.LEGACY, HeaderStyle.BOTH):
        headers["X-RateLimit-Limit"] = str(decision.limit)
        headers["X-RateLimit-Remaining"] = str(decision.remaining)
        headers["X-RateLimit-Reset"] = str(math.ceil(decision.reset_at_ms / 1000))
    if not decision.admitted:
        headers["Retry-After"] = str(decision.retry_after_s)
    return headers


__all__ = [
    "REJECTION_BODY",
    "ClientWindowCounter",
    "MemoryWindowStore",
    "RedisWindowStore",
    "Throttle",
    "ThrottleDecision",
    "WindowStore",
    "build_throttle",
    "client_identity",
    "rate_limit_headers",
    "window_label",
]
