"""Request rate limiting for the extraction executor.

Three gates apply to every page load: a concurrency semaphore, request
ceilings per minute, hour and day, and a randomised minimum interval
between consecutive requests. Ceilings are tracked in memory (sliding
windows, one process) or in Redis (fixed windows shared by all workers).
"""

import asyncio
import logging
import random
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from redis.asyncio import Redis

from marketscan import metrics
from marketscan.config import RateLimitConfig

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 3600
DAY = 86400


def _windows(config: RateLimitConfig) -> dict[int, int]:
    return {
        MINUTE: config.requests_per_minute,
        HOUR: config.requests_per_hour,
        DAY: config.requests_per_day,
    }


class MemoryRequestBudget:
    """Sliding-window request ceilings kept in this process."""

    def __init__(self, limits: dict[int, int], clock: Callable[[], float] = time.monotonic):
        self.limits = limits
        self._clock = clock
        self._history: deque[float] = deque()

    async def try_acquire(self) -> float:
        """
        Reserve one request if every window has room.

        Returns:
            0.0 if reserved, else seconds until the tightest window frees a slot
        """
        now = self._clock()
        longest = max(self.limits)
        while self._history and self._history[0] <= now - longest:
            self._history.popleft()

        wait = 0.0
        for window, limit in self.limits.items():
            in_window = [t for t in self._history if t > now - window]
            if len(in_window) >= limit:
                # Oldest request still counted must age out
                wait = max(wait, in_window[-limit] + window - now)
        if wait > 0:
            return wait
        self._history.append(now)
        return 0.0

    def used(self, window: int) -> int:
        now = self._clock()
        return sum(1 for t in self._history if t > now - window)


class RedisRequestBudget:
    """Fixed-window request ceilings shared through Redis counters."""

    def __init__(
        self,
        redis: Redis,
        limits: dict[int, int],
        key_prefix: str = "marketscan:ratelimit",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.limits = limits
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, window: int, now: float) -> str:
        return f"{self.key_prefix}:{window}:{int(now // window)}"

    async def try_acquire(self) -> float:
        now = self._clock()
        keys = {window: self._key(window, now) for window in self.limits}

        pipe = self.redis.pipeline()
        for window, key in keys.items():
            pipe.incr(key)
            pipe.expire(key, window)
        results = await pipe.execute()
        counts = dict(zip(keys, results[::2]))

        over = [w for w, count in counts.items() if count > self.limits[w]]
        if not over:
            return 0.0

        # Give back the reservation in every window
        pipe = self.redis.pipeline()
        for key in keys.values():
            pipe.decr(key)
        await pipe.execute()
        return max(window - (now % window) for window in over)

    async def used(self, window: int) -> int:
        value = await self.redis.get(self._key(window, self._clock()))
        return int(value or 0)


class ExtractionRateLimiter:
    """Gates page loads behind concurrency, ceiling and interval checks."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        budget=None,
        sleep: Callable = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self.budget = budget or MemoryRequestBudget(_windows(self.config))
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        self._interval_lock = asyncio.Lock()
        self._last_request = 0.0

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "ExtractionRateLimiter":
        if config.backend == "redis":
            redis = Redis.from_url(config.redis_url, decode_responses=True)
            return cls(config, budget=RedisRequestBudget(redis, _windows(config)))
        return cls(config)

    async def _wait_for_budget(self) -> float:
        waited = 0.0
        while True:
            wait = await self.budget.try_acquire()
            if wait <= 0:
                return waited
            logger.debug(f"Request ceiling reached, waiting {wait:.1f}s")
            await self._sleep(wait)
            waited += wait

    async def _wait_for_interval(self) -> float:
        async with self._interval_lock:
            elapsed = time.monotonic() - self._last_request
            interval = random.uniform(self.config.min_interval_seconds, self.config.max_interval_seconds)
            wait_needed = max(0.0, interval - elapsed)
            if wait_needed > 0:
                await self._sleep(wait_needed)
            self._last_request = time.monotonic()
            return wait_needed

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one request slot for the duration of a page load."""
        async with self._semaphore:
            waited = await self._wait_for_budget()
            waited += await self._wait_for_interval()
            metrics.rate_limit_wait_seconds.observe(waited)
            yield
