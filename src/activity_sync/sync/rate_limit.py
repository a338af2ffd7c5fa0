"""Per-platform token bucket, shared by every concurrent sync of that platform."""
import asyncio
import time
from typing import Awaitable, Callable


class TokenBucket:
    """
    Classic token bucket. `capacity` tokens max, refilled at `rate` tokens/second.

    The clock and sleep function are injectable so tests can drive time by hand.
    """

    def __init__(
        self,
        rate: float,
        capacity: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = float(rate)
        self.capacity = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, requests_per_minute: int, burst: int, **kwargs) -> "TokenBucket":
        return cls(rate=requests_per_minute / 60.0, capacity=burst, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens if available right now. Never waits."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: float = 1.0) -> None:
        """Wait until `tokens` are available, then take them."""
        if tokens > self.capacity:
            raise ValueError("cannot acquire more tokens than the bucket holds")
        async with self._lock:
            while not self.try_acquire(tokens):
                await self._sleep((tokens - self._tokens) / self.rate)
