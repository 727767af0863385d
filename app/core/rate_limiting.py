"""
Call pacing for rate-limited collaborators (the classification model).

Business code only calls ``await limiter.acquire()`` before each external call;
the pacing policy lives here and can be swapped without touching callers.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from app.core.logging import get_logger
from app.core.scheduling import SystemClock

logger = get_logger()


class RateLimiter(ABC):
    @abstractmethod
    async def acquire(self) -> None:
        ...


class IntervalRateLimiter(RateLimiter):
    """
    Bounded concurrency of one with a minimum gap between consecutive calls.

    The first acquire passes immediately; every following acquire waits until
    ``min_interval_s`` has passed since the previous one was granted.
    """

    def __init__(self, min_interval_s: float, *, clock: Optional[SystemClock] = None) -> None:
        if min_interval_s < 0:
            raise ValueError("min_interval_s must be >= 0")
        self.min_interval_s = float(min_interval_s)
        self.clock = clock or SystemClock()
        self._last_granted: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_granted is not None:
                wait_s = self._last_granted + self.min_interval_s - self.clock.monotonic()
                if wait_s > 0:
                    logger.debug("rate_limiter_waiting", wait_s=round(wait_s, 2))
                    await self.clock.sleep(wait_s)
            self._last_granted = self.clock.monotonic()


class UnlimitedRateLimiter(RateLimiter):
    async def acquire(self) -> None:
        return None
