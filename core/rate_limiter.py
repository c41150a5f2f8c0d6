"""
Rate Limiter — Sliding-window admission control per scope.

A scope is any string naming one shared budget: ``workspace:<id>`` by
default, or ``global`` when every workspace shares one provider budget.

Backends:
  - SlidingWindowRateLimiter:       in-process, one KeyedLock entry per scope,
                                    idle scopes swept once per window
  - RedisSlidingWindowRateLimiter:  sorted set per scope + atomic Lua script,
                                    for multi-process deployments

Semantics (both backends):
  capacity <= 0 → always admit
  evict timestamps older than now - window
  remaining >= capacity → reject, else record now and admit
"""
from __future__ import annotations

import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable

from utils.keyed_lock import KeyedLock

logger = structlog.get_logger()

WINDOW_SECONDS = 60.0


def scope_key_for(workspace_id: str, scope: str = "workspace") -> str:
    if scope == "global":
        return "global"
    return f"workspace:{workspace_id}"


class RateLimiter(ABC):

    @abstractmethod
    async def admit(self, scope_key: str, capacity: int) -> bool:
        ...

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  In-process
# ──────────────────────────────────────────────────────────────

class SlidingWindowRateLimiter(RateLimiter):
    """
    Timestamps per scope in a deque, oldest first. The clock is injectable
    so tests can move time without sleeping.
    """

    def __init__(self, window_seconds: float = WINDOW_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._locks = KeyedLock()
        self._last_sweep = clock()

    async def admit(self, scope_key: str, capacity: int) -> bool:
        if capacity <= 0:
            return True

        async with self._locks(scope_key):
            now = self._clock()
            cutoff = now - self.window_seconds
            self._sweep_idle(now, cutoff)
            window = self._windows.setdefault(scope_key, deque())
            while window and window[0] < cutoff:
                window.popleft()

            if len(window) >= capacity:
                logger.info("rate_limit_rejected",
                            scope=scope_key,
                            in_window=len(window),
                            capacity=capacity)
                return False

            window.append(now)
            return True

    def _sweep_idle(self, now: float, cutoff: float):
        # At most once per window: forget scopes whose newest entry has expired
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        idle = [k for k, w in self._windows.items() if not w or w[-1] < cutoff]
        for key in idle:
            del self._windows[key]
        if idle:
            logger.debug("rate_limit_scopes_swept", count=len(idle))

    def usage(self, scope_key: str) -> int:
        """Admissions currently counted for a scope (stale entries included until next admit)."""
        return len(self._windows.get(scope_key, ()))

    @property
    def scope_count(self) -> int:
        return len(self._windows)


# ──────────────────────────────────────────────────────────────
#  Redis
# ──────────────────────────────────────────────────────────────

# KEYS[1] scope key; ARGV: now_ms, window_ms, capacity, member
_ADMIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
if redis.call('ZCARD', key) >= capacity then
  return 0
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, window)
return 1
"""


class RedisSlidingWindowRateLimiter(RateLimiter):
    """
    Shared-store limiter. The whole evict/count/add runs inside one Lua
    script, so concurrent processes cannot both take the last slot.
    """

    KEY_PREFIX = "ratelimit:"

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 window_seconds: float = WINDOW_SECONDS,
                 client=None):
        self._redis_url = redis_url
        self._redis = client
        self.window_seconds = window_seconds

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._redis.ping()
            logger.info("redis_rate_limiter_connected", url=self._redis_url)

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def admit(self, scope_key: str, capacity: int) -> bool:
        if capacity <= 0:
            return True
        await self.connect()

        now_ms = int(time.time() * 1000)
        window_ms = int(self.window_seconds * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex[:8]}"
        admitted = await self._redis.eval(
            _ADMIT_SCRIPT, 1, self.KEY_PREFIX + scope_key,
            now_ms, window_ms, capacity, member,
        )
        if int(admitted) != 1:
            logger.info("rate_limit_rejected", scope=scope_key, capacity=capacity, backend="redis")
            return False
        return True


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_rate_limiter(backend: str = "memory", redis_url: str = "redis://localhost:6379",
                        window_seconds: float = WINDOW_SECONDS) -> RateLimiter:
    if backend == "redis":
        logger.info("rate_limiter_created", backend="redis")
        return RedisSlidingWindowRateLimiter(redis_url=redis_url, window_seconds=window_seconds)
    logger.info("rate_limiter_created", backend="memory")
    return SlidingWindowRateLimiter(window_seconds=window_seconds)
