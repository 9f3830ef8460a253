"""
Guard tests — one property suite run against every IdempotencyGuard and
RateLimiter implementation, plus the Redis-specific fail-open behaviour.

Redis is replaced by a small in-process fake exposing the three commands the
guards use (SET NX EX, INCR, EXPIRE), with a controllable clock.
"""
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fortunebot.cache import (
    InMemoryIdempotencyGuard,
    InMemoryRateLimiter,
    RedisIdempotencyGuard,
    RedisRateLimiter,
    make_idempotency_key,
    make_rate_key,
)


class Clock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the guards, with TTLs on a fake clock."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._values: dict[str, int | str] = {}
        self._expiry: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        until = self._expiry.get(key)
        if until is not None and until <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._values

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None):
        if nx and self._alive(key):
            return None
        self._values[key] = value
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        return True

    async def incr(self, key: str) -> int:
        current = int(self._values[key]) if self._alive(key) else 0
        self._values[key] = current + 1
        return current + 1

    async def expire(self, key: str, seconds: int) -> bool:
        self._expiry[key] = self._clock() + seconds
        return True


def _idempotency_guards(ttl: int, clock: Clock):
    return [
        InMemoryIdempotencyGuard(ttl, clock=clock),
        RedisIdempotencyGuard(FakeRedis(clock), ttl),
    ]


def _rate_limiters(max_events: int, window: int, clock: Clock):
    return [
        InMemoryRateLimiter(max_events, window, clock=clock),
        RedisRateLimiter(FakeRedis(clock), max_events, window, clock=clock),
    ]


# ---------------------------------------------------------------------------
# IdempotencyGuard property suite
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("index", [0, 1], ids=["in_memory", "redis"])
async def test_claim_is_true_once_per_key(index: int) -> None:
    guard = _idempotency_guards(60, Clock())[index]
    assert await guard.claim("U1:m1") is True
    assert await guard.claim("U1:m1") is False
    assert await guard.claim("U1:m1") is False
    assert await guard.claim("U1:m2") is True
    assert await guard.claim("U2:m1") is True


@pytest.mark.asyncio
@pytest.mark.parametrize("index", [0, 1], ids=["in_memory", "redis"])
async def test_claim_expires_after_ttl(index: int) -> None:
    clock = Clock()
    guard = _idempotency_guards(60, clock)[index]
    assert await guard.claim("U1:m1") is True
    clock.advance(59)
    assert await guard.claim("U1:m1") is False
    clock.advance(2)
    assert await guard.claim("U1:m1") is True


@pytest.mark.asyncio
async def test_in_memory_guard_evicts_expired_keys() -> None:
    clock = Clock()
    guard = InMemoryIdempotencyGuard(10, clock=clock)
    for i in range(50):
        await guard.claim(f"U1:m{i}")
    assert len(guard) == 50
    clock.advance(11)
    await guard.claim("U1:new")
    assert len(guard) == 1


@pytest.mark.asyncio
async def test_in_memory_limiter_forgets_idle_keys() -> None:
    clock = Clock()
    limiter = InMemoryRateLimiter(max_events=3, window_seconds=10, clock=clock)
    for i in range(50):
        await limiter.allow(f"U{i}")
    assert len(limiter) == 50
    clock.advance(11)
    assert await limiter.allow("U-new") is True
    assert len(limiter) == 1


# ---------------------------------------------------------------------------
# RateLimiter property suite
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("index", [0, 1], ids=["in_memory", "redis"])
async def test_allows_up_to_max_events_per_window(index: int) -> None:
    clock = Clock(start=600.0)  # window boundary, so the fixed window starts here too
    limiter = _rate_limiters(3, 60, clock)[index]
    assert [await limiter.allow("U1") for _ in range(4)] == [True, True, True, False]
    # Other keys are counted separately
    assert await limiter.allow("U2") is True


@pytest.mark.asyncio
@pytest.mark.parametrize("index", [0, 1], ids=["in_memory", "redis"])
async def test_window_resets(index: int) -> None:
    clock = Clock(start=600.0)
    limiter = _rate_limiters(2, 60, clock)[index]
    assert await limiter.allow("U1") is True
    assert await limiter.allow("U1") is True
    assert await limiter.allow("U1") is False
    clock.advance(61)
    assert await limiter.allow("U1") is True


# ---------------------------------------------------------------------------
# Redis specifics
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_redis_guard_uses_set_nx_with_ttl() -> None:
    client = AsyncMock()
    client.set.return_value = True
    guard = RedisIdempotencyGuard(client, 3600)

    assert await guard.claim("U1:m1") is True
    client.set.assert_awaited_once_with(make_idempotency_key("U1:m1"), "1", nx=True, ex=3600)


@pytest.mark.asyncio
async def test_redis_rate_limiter_sets_ttl_on_first_hit_only() -> None:
    client = AsyncMock()
    client.incr.side_effect = [1, 2]
    limiter = RedisRateLimiter(client, 5, 60, clock=lambda: 125.0)

    await limiter.allow("U1")
    await limiter.allow("U1")

    client.incr.assert_awaited_with(make_rate_key("U1", 2))
    client.expire.assert_awaited_once_with(make_rate_key("U1", 2), 60)


@pytest.mark.asyncio
async def test_redis_guards_fail_open() -> None:
    client = AsyncMock()
    client.set.side_effect = RedisConnectionError("connection refused")
    client.incr.side_effect = RedisConnectionError("connection refused")

    assert await RedisIdempotencyGuard(client, 60).claim("U1:m1") is True
    assert await RedisRateLimiter(client, 1, 60).allow("U1") is True


def test_key_builders() -> None:
    assert make_idempotency_key("U1:m1") == "idem:U1:m1"
    assert make_rate_key("U1", 7) == "rate:U1:7"
