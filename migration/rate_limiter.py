"""
Cooperative rate limiting for the source API.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional


class RateLimiter:
    """
    Enforces a minimum interval between consecutive acquisitions.

    One instance is shared by every source-API call of a run, however many
    records are in flight locally. Callers queue on a lock, so requests leave
    in acquisition order.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if min_interval < 0:
            raise ValueError("min_interval cannot be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_request: Optional[float] = None

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_request is not None:
                wait = self.min_interval - (self._clock() - self._last_request)
                if wait > 0:
                    await self._sleep(wait)
            self._last_request = self._clock()
