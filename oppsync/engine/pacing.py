"""
Fixed-interval pacing for sequential upstream calls.

Every call to `wait()` returns no sooner than `interval` after the previous
one returned, regardless of how long the caller's request took in between.
The first call never waits.
"""
from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class Pacer:
    def __init__(
        self,
        interval: timedelta,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.interval = interval.total_seconds()
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()
        self.calls = 0

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                remaining = self.interval - (self._clock() - self._last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last = self._clock()
            self.calls += 1

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Wait for the next slot, then await `fn()`."""
        await self.wait()
        return await fn()
