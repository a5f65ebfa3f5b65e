"""Tests for opsrelay.delivery.rate_limiter — sliding-window throttle"""

import asyncio

import pytest

from opsrelay.delivery.rate_limiter import RateLimiter


def make_limiter(clock, max_requests=3, window_seconds=10.0):
    return RateLimiter(
        max_requests=max_requests,
        window_seconds=window_seconds,
        clock=clock,
        sleep=clock.sleep,
    )


class TestRateLimiterConstruction:
    def test_defaults(self):
        limiter = RateLimiter()
        assert limiter.max_requests == 30
        assert limiter.window == 60.0

    @pytest.mark.parametrize("max_requests,window", [(0, 1.0), (1, 0), (1, -5.0)])
    def test_invalid_arguments(self, max_requests, window):
        with pytest.raises(ValueError):
            RateLimiter(max_requests=max_requests, window_seconds=window)


class TestThrottle:
    @pytest.mark.asyncio
    async def test_under_limit_does_not_wait(self, fake_clock):
        limiter = make_limiter(fake_clock)
        for _ in range(3):
            assert await limiter.throttle() == 0.0
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_until_oldest_call_leaves_window(self, fake_clock):
        limiter = make_limiter(fake_clock)
        for _ in range(3):
            await limiter.throttle()

        waited = await limiter.throttle()

        assert waited == pytest.approx(10.0)
        assert fake_clock.now == pytest.approx(1010.0)
        assert limiter.throttled == 1

    @pytest.mark.asyncio
    async def test_partial_window_wait(self, fake_clock):
        limiter = make_limiter(fake_clock, max_requests=2)
        await limiter.throttle()
        fake_clock.advance(4.0)
        await limiter.throttle()

        waited = await limiter.throttle()

        # Oldest call was at t=1000, so the slot frees at t=1010
        assert waited == pytest.approx(6.0)

    @pytest.mark.asyncio
    async def test_old_calls_are_pruned(self, fake_clock):
        limiter = make_limiter(fake_clock)
        for _ in range(3):
            await limiter.throttle()
        fake_clock.advance(10.0)

        assert await limiter.throttle() == 0.0
        assert len(limiter.requests) == 1

    @pytest.mark.asyncio
    async def test_never_more_than_n_in_any_window(self, fake_clock):
        limiter = make_limiter(fake_clock, max_requests=3, window_seconds=10.0)
        admitted = []
        for _ in range(12):
            await limiter.throttle()
            admitted.append(fake_clock.now)
            fake_clock.advance(1.5)

        for i in range(len(admitted) - 3):
            assert admitted[i + 3] - admitted[i] >= 10.0

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_window(self, fake_clock):
        limiter = make_limiter(fake_clock, max_requests=2, window_seconds=10.0)
        admitted = []

        async def call():
            await limiter.throttle()
            admitted.append(fake_clock.now)

        await asyncio.gather(*(call() for _ in range(5)))

        admitted.sort()
        assert len(admitted) == 5
        for i in range(len(admitted) - 2):
            assert admitted[i + 2] - admitted[i] >= 10.0


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_would_limit(self, fake_clock):
        limiter = make_limiter(fake_clock, max_requests=2)
        assert limiter.would_limit() is False
        await limiter.throttle()
        await limiter.throttle()
        assert limiter.would_limit() is True
        fake_clock.advance(10.0)
        assert limiter.would_limit() is False

    @pytest.mark.asyncio
    async def test_get_stats(self, fake_clock):
        limiter = make_limiter(fake_clock)
        await limiter.throttle()
        stats = limiter.get_stats()
        assert stats["recent_requests"] == 1
        assert stats["remaining"] == 2
        assert stats["throttled"] == 0

    @pytest.mark.asyncio
    async def test_reset(self, fake_clock):
        limiter = make_limiter(fake_clock, max_requests=1)
        await limiter.throttle()
        limiter.reset()
        assert await limiter.throttle() == 0.0
