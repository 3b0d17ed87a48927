import asyncio
import time
from typing import Awaitable, Callable

import structlog

from tokenwatch.errors import RateLimiterWaitError


class RateLimiter:
    """
    RateLimiter is a token bucket in front of outbound calls.

    Permits refill continuously at `rate` per second up to `burst`,
    so short bursts go through immediately while the sustained
    throughput stays bounded by the rate. The permit counter is
    guarded by an asyncio lock; the lock is never held while sleeping.
    """

    def __init__(
        self,
        rate: "float",
        burst: "int",
        *,
        clock: "Callable[[], float]" = time.monotonic,
        sleep: "Callable[[float], Awaitable[None]]" = asyncio.sleep,
        logger: "structlog.stdlib.BoundLogger | None" = None,
    ) -> "None":
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self._rate = float(rate)
        self._burst = float(burst)
        self._clock = clock
        self._sleep = sleep
        self._logger = logger or structlog.get_logger()
        self._tokens: "float" = float(burst)
        self._last_refill: "float" = clock()
        self._lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def rate(self) -> "float":
        return self._rate

    @property
    def burst(self) -> "int":
        return int(self._burst)

    @property
    def tokens(self) -> "float":
        """
        permits currently stored, refilled up to now.
        """
        self._refill(self._clock())
        return self._tokens

    def _refill(self, now: "float") -> "None":
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._burst, self._tokens + elapsed * self._rate)
        self._last_refill = now

    async def wait(self, timeout: "float | None" = None) -> "float":
        """
        blocks until one permit is available, then consumes it.
        Returns the number of seconds spent waiting.

        Raises RateLimiterWaitError without sleeping when the next
        permit would not be ready before `timeout` seconds.
        """
        start = self._clock()
        deadline = None if timeout is None else start + timeout

        while True:
            async with self._lock:
                now = self._clock()
                self._refill(now)
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return now - start

                delay = (1.0 - self._tokens) / self._rate

            if deadline is not None and now + delay > deadline:
                remaining = max(0.0, deadline - now)
                raise RateLimiterWaitError(delay, remaining)

            self._logger.debug("rate_limiter_wait", delay=round(delay, 3))
            await self._sleep(delay)
