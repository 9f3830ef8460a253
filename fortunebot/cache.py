"""
cache.py — Redis layer and the idempotency / rate-limit guards.

Namespace conventions:
  idem:{key}           → "1"            TTL settings.idempotency_ttl_seconds
  rate:{key}:{window}  → event counter  TTL = window length

Design:
  - redis.asyncio client (redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis
  - Each guard has an in-memory implementation (single process) and a Redis
    implementation (shared by every instance); the conversation core only sees
    the IdempotencyGuard / RateLimiter interfaces and both satisfy the same tests
  - Keys contain LINE user/message ids only, never message text
"""
import asyncio
import logging
import time
from collections import deque
from typing import Callable, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from fortunebot.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
IDEMPOTENCY_PREFIX = "idem"
RATE_PREFIX = "rate"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_idempotency_key(key: str) -> str:
    """Build Redis key for an idempotency claim: idem:{key}"""
    return f"{IDEMPOTENCY_PREFIX}:{key}"


def make_rate_key(key: str, window_index: int) -> str:
    """Build Redis key for one fixed rate window: rate:{key}:{window_index}"""
    return f"{RATE_PREFIX}:{key}:{window_index}"


# ---------------------------------------------------------------------------
# Pool factory — called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup and stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class IdempotencyGuard(Protocol):
    async def claim(self, key: str) -> bool:
        """True the first time `key` is seen within the TTL, False for every repeat."""
        ...


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool:
        """True while `key` has made fewer than max_events calls in the current window."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementations (single instance)
# ---------------------------------------------------------------------------

class InMemoryIdempotencyGuard:
    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._expiry: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        expired = [k for k, until in self._expiry.items() if until <= now]
        for k in expired:
            del self._expiry[k]

    async def claim(self, key: str) -> bool:
        async with self._lock:
            now = self._clock()
            self._evict(now)
            if key in self._expiry:
                return False
            self._expiry[key] = now + self._ttl
            return True

    def __len__(self) -> int:
        return len(self._expiry)


class InMemoryRateLimiter:
    """Sliding-window counter per key."""

    def __init__(
        self,
        max_events: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_events = max_events
        self._window = window_seconds
        self._clock = clock
        self._events: dict[str, deque] = {}
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        # A key whose newest event has left the window has nothing left to count
        idle = [k for k, events in self._events.items() if not events or events[-1] <= now - self._window]
        for k in idle:
            del self._events[k]

    async def allow(self, key: str) -> bool:
        async with self._lock:
            now = self._clock()
            self._evict(now)
            events = self._events.setdefault(key, deque())
            while events and events[0] <= now - self._window:
                events.popleft()
            if len(events) >= self._max_events:
                return False
            events.append(now)
            return True

    def __len__(self) -> int:
        return len(self._events)


# ---------------------------------------------------------------------------
# Redis implementations (shared across instances)
# ---------------------------------------------------------------------------

class RedisIdempotencyGuard:
    def __init__(self, client: aioredis.Redis, ttl_seconds: int) -> None:
        self._client = client
        self._ttl = ttl_seconds

    async def claim(self, key: str) -> bool:
        try:
            created = await self._client.set(make_idempotency_key(key), "1", nx=True, ex=self._ttl)
        except RedisError as exc:
            # Fail open: the conditional session update still blocks double transitions
            logger.error("Idempotency claim failed key=%s error=%s", key, type(exc).__name__)
            return True
        return bool(created)


class RedisRateLimiter:
    """Fixed-window counter: INCR the window key, set its TTL on first hit."""

    def __init__(
        self,
        client: aioredis.Redis,
        max_events: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._max_events = max_events
        self._window = window_seconds
        self._clock = clock

    async def allow(self, key: str) -> bool:
        window_index = int(self._clock() // self._window)
        redis_key = make_rate_key(key, window_index)
        try:
            count = await self._client.incr(redis_key)
            if count == 1:
                await self._client.expire(redis_key, self._window)
        except RedisError as exc:
            logger.error("Rate check failed key=%s error=%s", key, type(exc).__name__)
            return True
        return count <= self._max_events
