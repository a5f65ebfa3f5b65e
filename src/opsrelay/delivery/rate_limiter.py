"""Rate Limiter — sliding-window throttle in front of the chat transport."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RateLimiter:
    """
    Sliding-window rate limiter.

    ``throttle()`` delays the caller so that no more than ``max_requests``
    calls happen in any trailing ``window_seconds`` interval. It never fails,
    it only waits.
    """

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window = window_seconds
        self.requests: deque[float] = deque()
        self.throttled = 0
        self._clock = clock
        self._sleep = sleep

    def _prune(self, now: float) -> None:
        while self.requests and now - self.requests[0] >= self.window:
            self.requests.popleft()

    async def throttle(self) -> float:
        """
        Wait until a slot is free, then consume it.

        Returns:
            Total seconds spent waiting.
        """
        waited = 0.0
        now = self._clock()
        self._prune(now)

        # Loop: another coroutine may have taken the slot while we slept
        while len(self.requests) >= self.max_requests:
            wait_time = self.window - (now - self.requests[0])
            if wait_time > 0:
                self.throttled += 1
                logger.debug(
                    "Rate limit reached (%d/%d), waiting %.3fs",
                    len(self.requests),
                    self.max_requests,
                    wait_time,
                )
                await self._sleep(wait_time)
                waited += wait_time
            now = self._clock()
            self._prune(now)

        self.requests.append(now)
        return waited

    def would_limit(self) -> bool:
        """Check if a call would be throttled right now, without consuming a slot"""
        now = self._clock()
        recent = sum(1 for t in self.requests if now - t < self.window)
        return recent >= self.max_requests

    def reset(self) -> None:
        """Forget every recorded call"""
        self.requests.clear()

    def get_stats(self) -> dict[str, int]:
        """Get limiter statistics"""
        now = self._clock()
        recent = sum(1 for t in self.requests if now - t < self.window)
        return {
            "recent_requests": recent,
            "remaining": max(0, self.max_requests - recent),
            "throttled": self.throttled,
        }
