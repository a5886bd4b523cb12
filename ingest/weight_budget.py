import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)


class WeightBudget:
    """Rolling request-weight window shared by every call of one REST client."""

    def __init__(
        self,
        limit: int = 1200,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limit = int(limit)
        self.window_s = float(window_s)
        self._clock = clock
        self._sleep = sleep
        self.window_start = clock()
        self.current_weight = 0
        self.waits = 0

    def _roll(self) -> None:
        now = self._clock()
        if now - self.window_start >= self.window_s:
            self.window_start = now
            self.current_weight = 0

    def would_exceed(self, weight: int) -> bool:
        self._roll()
        return self.current_weight + weight > self.limit

    def seconds_until_reset(self) -> float:
        return max(0.0, self.window_start + self.window_s - self._clock())

    def remaining(self) -> int:
        self._roll()
        return max(0, self.limit - self.current_weight)

    async def acquire(self, weight: int) -> None:
        if weight > self.limit:
            raise ValueError(f"Request weight {weight} exceeds budget limit {self.limit}")
        while self.would_exceed(weight):
            wait = self.seconds_until_reset()
            self.waits += 1
            logger.warning(
                "Request weight budget exhausted (%s/%s); waiting %.1fs for window reset",
                self.current_weight,
                self.limit,
                wait,
            )
            await self._sleep(wait)
        self.current_weight += weight

    def sync_used(self, used_weight: Optional[int]) -> None:
        """Adopt the server-reported usage when it is higher than the local count."""
        if used_weight is None:
            return
        self._roll()
        if used_weight > self.current_weight:
            self.current_weight = int(used_weight)
