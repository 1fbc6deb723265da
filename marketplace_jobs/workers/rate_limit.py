import asyncio
import time
from collections import deque
from typing import Callable, Optional

class SlidingWindowRateLimiter:
    """
    Caps dequeues to `max_jobs` per rolling `per_seconds` window.

    `wait()` blocks until a slot is free without taking it; `record()` takes
    it once a job was actually leased, so idle polls cost nothing.
    """

    def __init__(self, max_jobs: int, per_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_jobs = max_jobs
        self.per_seconds = per_seconds
        self._clock = clock
        self._events: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.per_seconds:
            self._events.popleft()

    def delay(self) -> float:
        """Seconds until a slot frees up; 0 when one is free now."""
        now = self._clock()
        self._prune(now)
        if len(self._events) < self.max_jobs:
            return 0.0
        return max(0.0, self._events[0] + self.per_seconds - now)

    def record(self) -> None:
        self._events.append(self._clock())

    async def wait(self, stop_event: Optional[asyncio.Event] = None) -> bool:
        """Returns False if `stop_event` fired while waiting."""
        while True:
            delay = self.delay()
            if delay <= 0:
                return True
            if stop_event is None:
                await asyncio.sleep(delay)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                return False
            except asyncio.TimeoutError:
                pass
