import time
from collections import deque
from typing import Callable, Deque

DEFAULT_MAX_EVENTS = 10
DEFAULT_WINDOW_SECONDS = 60.0


class RateLimiter:
    """Sliding window limiter: at most max_events allowed within any window_seconds span."""

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS,
                 window_seconds: float = DEFAULT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.window_seconds:
            self._events.popleft()

    def allow(self) -> bool:
        """Record an event and return True, or return False if the window is full."""
        now = self._clock()
        self._expire(now)
        if len(self._events) >= self.max_events:
            return False
        self._events.append(now)
        return True

    @property
    def remaining(self) -> int:
        self._expire(self._clock())
        return max(0, self.max_events - len(self._events))

    def reset(self) -> None:
        self._events.clear()
