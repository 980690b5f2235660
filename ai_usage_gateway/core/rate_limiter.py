"""
Token-bucket rate limiter for outbound upstream calls.

One instance is shared by every caller in the process so the aggregate
request rate stays under the provider's limit.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """
    Token bucket with FIFO waiters.

    - The bucket holds at most ``capacity`` permits and starts full
    - Permits refill continuously at ``capacity / refill_period`` per second
    - ``acquire`` takes one permit; when the bucket is empty callers queue
      in arrival order and are woken as permits refill
    """

    def __init__(
        self,
        capacity: int = 30,
        refill_period: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the rate limiter.

        Args:
            capacity: Maximum permits available in a burst
            refill_period: Seconds needed to refill an empty bucket
            clock: Monotonic time source in seconds
            sleep: Coroutine used to wait for refills

        Raises:
            ValueError: If capacity or refill_period is not positive
        """
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if refill_period <= 0:
            raise ValueError("refill_period must be > 0")

        self.capacity = capacity
        self.refill_period = refill_period
        self.refill_rate = capacity / refill_period

        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._waiters = 0

        # asyncio.Lock wakes waiters in FIFO order; holding it while sleeping
        # keeps later arrivals behind the caller at the head of the queue.
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait for a permit and take it."""
        self._waiters += 1
        try:
            async with self._lock:
                while True:
                    self._refill()
                    if self._tokens >= 1:
                        self._tokens -= 1
                        return
                    wait = (1 - self._tokens) / self.refill_rate
                    logger.debug("rate_limit_wait", wait_seconds=round(wait, 3), waiters=self._waiters)
                    await self._sleep(wait)
        finally:
            self._waiters -= 1

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def available_permits(self) -> float:
        """Permits available right now."""
        self._refill()
        return self._tokens

    def get_state(self) -> Dict[str, Any]:
        """Snapshot of the bucket for operational endpoints."""
        self._refill()
        return {
            "capacity": self.capacity,
            "available": round(self._tokens, 3),
            "refill_rate_per_second": self.refill_rate,
            "waiters": self._waiters,
        }

    def reset(self) -> None:
        """Refill the bucket completely."""
        self._tokens = float(self.capacity)
        self._last_refill = self._clock()

    def __str__(self) -> str:
        return f"RateLimiter({self._tokens:.1f}/{self.capacity}, {self.refill_rate:.3f}/s)"
