"""Token-bucket style request limiter.

A limiter admits at most ``capacity`` calls within any rolling window of
``interval`` seconds, keeps at least ``min_spacing`` seconds between two
consecutive call starts, and allows ``max_concurrent`` calls in flight.

The store client keeps one limiter per protocol (REST and GraphQL) so the
two quota regimes are paced independently.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from store_migration.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class TokenBucketLimiter:
    """Pace coroutine calls against a fixed call budget per interval."""

    def __init__(
        self,
        capacity: int,
        interval: float,
        min_spacing: float = 0.0,
        max_concurrent: int = 1,
        name: str = "limiter",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize limiter.

        Args:
            capacity: Maximum call starts within one interval
            interval: Window length in seconds
            min_spacing: Minimum seconds between two call starts
            max_concurrent: Calls allowed in flight at once
            name: Name used in log entries
            clock: Monotonic clock (injectable for tests)
            sleep: Async sleep function (injectable for tests)
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.capacity = capacity
        self.interval = interval
        self.min_spacing = max(min_spacing, 0.0)
        self.max_concurrent = max_concurrent
        self.name = name

        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._starts: deque[float] = deque()
        self._last_start: float | None = None

    def _required_wait(self, now: float) -> float:
        while self._starts and now - self._starts[0] >= self.interval:
            self._starts.popleft()

        wait = 0.0
        if len(self._starts) >= self.capacity:
            wait = self._starts[0] + self.interval - now
        if self._last_start is not None and self.min_spacing > 0:
            wait = max(wait, self._last_start + self.min_spacing - now)
        return wait

    async def acquire(self) -> None:
        """Wait until a call may start and reserve its slot in the window."""
        async with self._lock:
            while True:
                wait = self._required_wait(self._clock())
                if wait <= 0:
                    break
                logger.debug("rate_limiter_waiting", limiter=self.name, wait_seconds=round(wait, 3))
                await self._sleep(wait)

            stamp = self._clock()
            self._starts.append(stamp)
            self._last_start = stamp

    async def schedule(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` once a slot is free.

        Args:
            fn: Coroutine function to call
            *args: Positional arguments for ``fn``
            **kwargs: Keyword arguments for ``fn``

        Returns:
            Whatever ``fn`` returns
        """
        async with self._semaphore:
            await self.acquire()
            return await fn(*args, **kwargs)

    @property
    def in_window(self) -> int:
        """Number of call starts inside the current window."""
        self._required_wait(self._clock())
        return len(self._starts)
