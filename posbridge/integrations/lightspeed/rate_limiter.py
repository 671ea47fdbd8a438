"""
Sliding-window rate limiter for outbound Lightspeed API calls.
Admits at most N requests in any trailing one-second window. Owned by a client
instance; the timestamp window is guarded so concurrent tasks sharing a client
cannot over-admit.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()

WINDOW_SECONDS = 1.0


class SlidingWindowRateLimiter:
    """Admission control: call wait_for_slot() before every HTTP request."""

    def __init__(
        self,
        requests_per_second: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        window_seconds: float = WINDOW_SECONDS,
    ):
        if requests_per_second < 1:
            raise ValueError("requests_per_second must be at least 1")
        self.max_requests = requests_per_second
        self.window_seconds = window_seconds
        self._timestamps: deque[float] = deque()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    async def wait_for_slot(self) -> None:
        """
        Wait until a slot is free, then record the admission.
        Re-evaluates after every sleep since timers can fire early.
        """
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return

                wait_time = self.window_seconds - (now - self._timestamps[0])
                if wait_time > 0:
                    logger.debug("Rate limit window full, waiting", wait_seconds=round(wait_time, 3))
                    await self._sleep(wait_time)

    @property
    def in_window(self) -> int:
        """Admissions currently counted in the window."""
        self._prune(self._clock())
        return len(self._timestamps)
