"""Process-wide token bucket shared by every completion request.

Permits refill continuously at ``rate`` per second up to ``burst``. A waiter
only deducts a permit under the lock once a whole one is available, so a
waiter cancelled while sleeping never spends one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger("uvicorn.error")


class TokenBucketRateLimiter:
    def __init__(
        self,
        rate: float,
        burst: int = 1,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.burst = max(1, int(burst))
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.burst)
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self._closed = False

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def available_tokens(self) -> float:
        self._refill(self._clock())
        return self._tokens

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                if self._closed:
                    raise RuntimeError("rate limiter is stopped")
                self._refill(self._clock())
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait = (1.0 - self._tokens) / self.rate

            logger.debug("rate_limiter_wait seconds=%.3f rate=%.2f", wait, self.rate)
            await self._sleep(wait)

    def close(self) -> None:
        self._closed = True
