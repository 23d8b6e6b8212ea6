"""
Unit tests for the upstream rate limiter
"""

import pytest
from unittest.mock import AsyncMock
from ingestion.rate_limiter import RateLimiter


class TestMinimumInterval:
    """Spacing between consecutive acquisitions"""

    @pytest.mark.asyncio
    async def test_first_acquire_does_not_wait(self, fake_clock):
        limiter = RateLimiter("test", min_interval=0.5, clock=fake_clock, sleep=fake_clock.sleep)

        await limiter.acquire()

        assert fake_clock.sleeps == []
        assert fake_clock.now == 0.0

    @pytest.mark.asyncio
    async def test_back_to_back_acquires_are_spaced(self, fake_clock):
        limiter = RateLimiter("test", min_interval=0.5, clock=fake_clock, sleep=fake_clock.sleep)

        for _ in range(3):
            await limiter.acquire()

        assert fake_clock.sleeps == [0.5, 0.5]
        assert fake_clock.now == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_no_wait_when_caller_was_already_slow(self, fake_clock):
        limiter = RateLimiter("test", min_interval=0.5, clock=fake_clock, sleep=fake_clock.sleep)

        await limiter.acquire()
        fake_clock.advance(2.0)
        await limiter.acquire()

        assert fake_clock.sleeps == []


class TestRollingWindow:
    """Ceiling on acquisitions within any window"""

    @pytest.mark.asyncio
    async def test_waits_for_oldest_request_to_leave_window(self, fake_clock):
        limiter = RateLimiter(
            "test", min_interval=0, max_per_window=3, window_seconds=10,
            clock=fake_clock, sleep=fake_clock.sleep,
        )

        for _ in range(4):
            await limiter.acquire()

        assert fake_clock.sleeps == [10]
        assert fake_clock.now == 10

    @pytest.mark.asyncio
    async def test_bound_holds_over_any_rolling_window(self, fake_clock):
        limiter = RateLimiter(
            "test", min_interval=1, max_per_window=5, window_seconds=10,
            clock=fake_clock, sleep=fake_clock.sleep,
        )

        times = []
        for _ in range(40):
            await limiter.acquire()
            times.append(fake_clock.now)

        for start in times:
            in_window = [t for t in times if start <= t < start + 10]
            assert len(in_window) <= 5

    @pytest.mark.asyncio
    async def test_window_exhaustion_callback(self, fake_clock):
        callback = AsyncMock()
        limiter = RateLimiter(
            "test", min_interval=0, max_per_window=2, window_seconds=60,
            clock=fake_clock, sleep=fake_clock.sleep, on_window_exhausted=callback,
        )

        for _ in range(3):
            await limiter.acquire()

        callback.assert_awaited_once_with(2, 60)

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_caller(self, fake_clock):
        callback = AsyncMock(side_effect=RuntimeError("database down"))
        limiter = RateLimiter(
            "test", min_interval=0, max_per_window=1, window_seconds=5,
            clock=fake_clock, sleep=fake_clock.sleep, on_window_exhausted=callback,
        )

        await limiter.acquire()
        await limiter.acquire()

        assert fake_clock.now == 5


def test_rejects_empty_window():
    with pytest.raises(ValueError):
        RateLimiter("test", max_per_window=0)


@pytest.mark.asyncio
async def test_stats(fake_clock):
    limiter = RateLimiter(
        "catalog-api", min_interval=0, max_per_window=10, window_seconds=60,
        clock=fake_clock, sleep=fake_clock.sleep,
    )

    await limiter.acquire()
    fake_clock.advance(5)
    await limiter.acquire()
    fake_clock.advance(1)

    stats = limiter.stats()

    assert stats["name"] == "catalog-api"
    assert stats["requests_in_window"] == 2
    assert stats["total_requests"] == 2
    assert stats["window_age_seconds"] == 6
    assert stats["seconds_since_last_request"] == 1

    fake_clock.advance(60)
    assert limiter.stats()["requests_in_window"] == 0
