from __future__ import annotations

import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Protocol

import redis.asyncio as aioredis

from hana.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class RateLimiter(Protocol):
    limit: int
    window_seconds: float

    async def hit(self, key: str) -> RateLimitDecision:
        ...

    def prune(self) -> int:
        ...


class SlidingWindowRateLimiter:
    """Per-key sliding window kept in process memory.

    Each key holds at most ``limit`` timestamps. Timestamps older than the
    window are dropped lazily when the key is hit, and a rejected hit is not
    recorded, so a caller who keeps retrying is let back in once the oldest
    accepted hit leaves the window. State is per process.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _evict(self, hits: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque(maxlen=self.limit))
            self._evict(hits, now)
            if len(hits) >= self.limit:
                retry_after = math.ceil(hits[0] + self.window_seconds - now)
                return RateLimitDecision(False, 0, max(retry_after, 1))
            hits.append(now)
            return RateLimitDecision(True, self.limit - len(hits))

    def prune(self) -> int:
        """Drop keys whose hits have all left the window."""
        now = self._clock()
        with self._lock:
            idle = []
            for key, hits in self._hits.items():
                self._evict(hits, now)
                if not hits:
                    idle.append(key)
            for key in idle:
                del self._hits[key]
        return len(idle)


class RedisSlidingWindowRateLimiter:
    """Sliding window shared between processes through a Redis sorted set."""

    # Atomic trim + count + add, so concurrent callers cannot both take the last slot
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  return {0, 0, math.max(retry_after, 1)}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, math.ceil(window * 1000))
return {1, limit - count - 1, 0}
"""

    def __init__(
        self,
        redis_url: str,
        limit: int,
        window_seconds: float,
        *,
        prefix: str = "hana:rate",
        socket_timeout: float = 5.0,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.redis_url = redis_url
        self.limit = limit
        self.window_seconds = float(window_seconds)
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._script = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on it."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit(self, key: str) -> RateLimitDecision:
        allowed, remaining, retry_after = await self._script(
            keys=[f"{self.prefix}:{key}"],
            args=[time.time(), self.window_seconds, self.limit, uuid.uuid4().hex],
        )
        return RateLimitDecision(bool(int(allowed)), int(remaining), int(retry_after))

    def prune(self) -> int:
        # keys expire on their own
        return 0

    async def close(self) -> None:
        await self.client.aclose()
