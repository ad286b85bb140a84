"""
Sliding-window rate limiter for the Polygon REST budget.
Shared by every request the client makes; async-safe via a lock.
"""
import asyncio
import logging
import time
from collections import deque
from typing import Callable, Optional

logger = logging.getLogger("snoopflow.rate_limiter")


class SlidingWindowRateLimiter:
    """
    Allow at most `max_requests` calls in any rolling `window` seconds.
    A `max_requests` of 0 disables throttling.
    """

    def __init__(
        self,
        max_requests: int,
        window: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._requests: deque[float] = deque()
        self._lock: Optional[asyncio.Lock] = None

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window:
            self._requests.popleft()

    def wait_time(self) -> float:
        """Seconds until the next call would be admitted (0 if now)."""
        if not self.enabled:
            return 0.0
        now = self._clock()
        self._prune(now)
        if len(self._requests) < self.max_requests:
            return 0.0
        return max(0.0, self.window - (now - self._requests[0]))

    async def throttle(self) -> None:
        if not self.enabled:
            return
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            delay = self.wait_time()
            if delay > 0:
                logger.debug("Rate limiting: waiting %.2fs", delay)
                await self._sleep(delay)
                self._prune(self._clock())
            self._requests.append(self._clock())
