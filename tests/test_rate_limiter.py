"""Tests for request ceilings and the per-request slot."""

import asyncio
import uuid

import pytest
import redis.asyncio as redis
from pydantic import ValidationError

from marketscan.config import RateLimitConfig, settings
from marketscan.ingest.rate_limiter import (
    HOUR,
    MINUTE,
    ExtractionRateLimiter,
    MemoryRequestBudget,
    RedisRequestBudget,
)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedBudget:
    def __init__(self, waits):
        self.waits = list(waits)

    async def try_acquire(self):
        return self.waits.pop(0) if self.waits else 0.0


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


async def test_memory_budget_enforces_every_window():
    clock = FakeClock()
    budget = MemoryRequestBudget({MINUTE: 2, HOUR: 3}, clock=clock)

    assert await budget.try_acquire() == 0.0
    clock.now = 1
    assert await budget.try_acquire() == 0.0
    clock.now = 2
    assert await budget.try_acquire() == pytest.approx(58)
    assert budget.used(MINUTE) == 2

    clock.now = 61
    assert await budget.try_acquire() == 0.0
    clock.now = 62
    assert await budget.try_acquire() == pytest.approx(3538)
    assert budget.used(HOUR) == 3


async def test_slot_sleeps_until_budget_frees():
    slept = []

    async def sleep(seconds):
        slept.append(seconds)

    config = RateLimitConfig(min_interval_seconds=0, max_interval_seconds=0)
    limiter = ExtractionRateLimiter(config, budget=ScriptedBudget([5.0, 2.5, 0.0]), sleep=sleep)

    async with limiter.slot():
        pass

    assert slept == [5.0, 2.5]


async def test_slot_spaces_consecutive_requests():
    slept = []

    async def sleep(seconds):
        slept.append(seconds)

    config = RateLimitConfig(min_interval_seconds=2, max_interval_seconds=2)
    limiter = ExtractionRateLimiter(config, sleep=sleep)

    async with limiter.slot():
        pass
    async with limiter.slot():
        pass

    assert len(slept) == 1
    assert 0 < slept[0] <= 2


async def test_slot_limits_concurrency():
    config = RateLimitConfig(max_concurrent=1, min_interval_seconds=0, max_interval_seconds=0)
    limiter = ExtractionRateLimiter(config)
    inside = 0
    peak = 0

    async def request():
        nonlocal inside, peak
        async with limiter.slot():
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(*(request() for _ in range(4)))

    assert peak == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"requests_per_minute": 100, "requests_per_hour": 50},
        {"requests_per_hour": 20000},
        {"min_interval_seconds": 5, "max_interval_seconds": 1},
        {"backend": "redis"},
        {"backend": "memcached"},
    ],
)
def test_invalid_limits_rejected(kwargs):
    with pytest.raises(ValidationError):
        RateLimitConfig(**kwargs)


@pytest.mark.asyncio
async def test_redis_budget_shares_counters():
    if not await _redis_available():
        pytest.skip("Redis not available")

    client = redis.from_url(settings.redis_url, decode_responses=True)
    prefix = f"marketscan:test:{uuid.uuid4().hex}"
    clock = FakeClock(now=1_700_000_000.0)
    first = RedisRequestBudget(client, {MINUTE: 2}, key_prefix=prefix, clock=clock)
    second = RedisRequestBudget(client, {MINUTE: 2}, key_prefix=prefix, clock=clock)

    try:
        assert await first.try_acquire() == 0.0
        assert await second.try_acquire() == 0.0
        wait = await first.try_acquire()
        assert 0 < wait <= MINUTE
        # the refused reservation is handed back
        assert await second.used(MINUTE) == 2
    finally:
        keys = [key async for key in client.scan_iter(f"{prefix}:*")]
        if keys:
            await client.delete(*keys)
        await client.aclose()
