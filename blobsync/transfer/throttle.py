"""Aggregate download rate limiting."""

import asyncio
import time
from typing import Awaitable, Callable, Optional


class TokenBucket:
    """Byte budget shared by every concurrent fetch.

    The bucket holds at most one second worth of bytes. Consumers take what
    they need even if that drives the balance negative, then sleep until the
    debt is repaid, so an exhausted budget slows fetches down but never
    fails them. A rate of 0 disables throttling.
    """

    def __init__(
        self,
        rate: Callable[[], int],
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._rate = rate
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._tokens: Optional[float] = None
        self._updated = 0.0

    async def consume(self, amount: int) -> float:
        """Take ``amount`` bytes from the budget.

        Returns:
            Seconds slept waiting for budget
        """
        rate = self._rate()
        if rate <= 0 or amount <= 0:
            return 0.0

        async with self._lock:
            now = self._clock()
            if self._tokens is None:
                self._tokens = float(rate)
            else:
                self._tokens = min(float(rate), self._tokens + (now - self._updated) * rate)
            self._updated = now
            self._tokens -= amount
            deficit = -self._tokens

        if deficit <= 0:
            return 0.0
        delay = deficit / rate
        await self._sleep(delay)
        return delay
