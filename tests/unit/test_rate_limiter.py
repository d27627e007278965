"""Sliding-window message throttle tests."""

from __future__ import annotations

import asyncio

import pytest
from freezegun import freeze_time

from taskhelper_service.services.rate_limiter import InMemoryRateLimiter, RedisRateLimiter
from tests.helpers import FakePipeline, FakeRedis


class _NetworkPipeline(FakePipeline):
    async def execute(self) -> list[object]:
        await asyncio.sleep(0)
        return await super().execute()


class _NetworkRedis(FakeRedis):
    """Yields to the event loop on every round trip, as a real connection does."""

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return _NetworkPipeline(self)

    async def zrem(self, key: str, *members: str) -> int:
        await asyncio.sleep(0)
        return await super().zrem(key, *members)


@pytest.mark.unit
class TestInMemoryRateLimiter:
    async def test_window_fills_then_slides(self) -> None:
        now = [0.0]
        limiter = InMemoryRateLimiter(max_messages=3, window_seconds=60, clock=lambda: now[0])

        for _ in range(3):
            now[0] += 10.0
            assert await limiter.hit("u-1", "bid-1")
        assert not await limiter.hit("u-1", "bid-1")

        # The first hit (t=10) leaves the window at t=70
        now[0] = 70.0
        assert await limiter.hit("u-1", "bid-1")
        assert not await limiter.hit("u-1", "bid-1")

    async def test_threads_are_independent(self) -> None:
        limiter = InMemoryRateLimiter(max_messages=1, window_seconds=60, clock=lambda: 5.0)

        assert await limiter.hit("u-1", "bid-1")
        assert not await limiter.hit("u-1", "bid-1")
        assert await limiter.hit("u-2", "bid-1")
        assert await limiter.hit("u-1", "bid-2")

    async def test_defaults_to_wall_clock(self) -> None:
        limiter = InMemoryRateLimiter(max_messages=1, window_seconds=60)

        with freeze_time("2026-05-01 10:00:00") as frozen:
            assert await limiter.hit("u-1", "bid-1")
            assert not await limiter.hit("u-1", "bid-1")
            frozen.tick(61)
            assert await limiter.hit("u-1", "bid-1")

    async def test_idle_threads_are_dropped(self) -> None:
        now = [0.0]
        limiter = InMemoryRateLimiter(max_messages=5, window_seconds=60, clock=lambda: now[0])

        for n in range(10):
            now[0] = 100.0 + n
            assert await limiter.hit(f"u-{n}", "bid-1")
        assert len(limiter._hits) == 10

        now[0] = 200.0
        assert await limiter.hit("u-late", "bid-2")
        assert list(limiter._hits) == [("u-late", "bid-2")]

    async def test_close_forgets_history(self) -> None:
        limiter = InMemoryRateLimiter(max_messages=1, window_seconds=60, clock=lambda: 1.0)
        assert await limiter.hit("u-1", "bid-1")
        await limiter.close()
        assert await limiter.hit("u-1", "bid-1")


@pytest.mark.unit
class TestRedisRateLimiter:
    async def test_counts_in_a_sorted_set(self) -> None:
        redis = FakeRedis()
        limiter = RedisRateLimiter(redis, max_messages=2, window_seconds=60)

        with freeze_time("2026-05-01 10:00:00") as frozen:
            assert await limiter.hit("u-1", "bid-1")
            frozen.tick(1)
            assert await limiter.hit("u-1", "bid-1")
            frozen.tick(1)
            assert not await limiter.hit("u-1", "bid-1")

            key = "ratelimit:messages:u-1:bid-1"
            assert len(redis.zsets[key]) == 2
            assert redis.expiries[key] == 60

            frozen.tick(60)
            assert await limiter.hit("u-1", "bid-1")

    async def test_concurrent_hits_never_exceed_the_limit(self) -> None:
        redis = _NetworkRedis()
        limiter = RedisRateLimiter(redis, max_messages=30, window_seconds=60)

        results = await asyncio.gather(*(limiter.hit("u-1", "bid-1") for _ in range(40)))

        assert results.count(True) == 30
        assert len(redis.zsets["ratelimit:messages:u-1:bid-1"]) == 30

    async def test_close_releases_client(self) -> None:
        redis = FakeRedis()
        await RedisRateLimiter(redis, max_messages=1, window_seconds=60).close()
        assert redis.closed
