"""Rolling-window call budget for executor invocations."""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from ralph_controller.constants import DEFAULT_MAX_CALLS_PER_HOUR, RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)


class RateLimiter:
    """Permit at most ``max_calls_per_hour`` acquisitions in any rolling window.

    Call timestamps are kept in a deque and pruned lazily; the oldest entry
    decides when the next slot opens.
    """

    def __init__(
        self,
        max_calls_per_hour: int = DEFAULT_MAX_CALLS_PER_HOUR,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls_per_hour < 1:
            raise ValueError("max_calls_per_hour must be at least 1")
        self.max_calls_per_hour = max_calls_per_hour
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: Deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()

    @property
    def calls_in_window(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._calls)

    @property
    def remaining_calls(self) -> int:
        return max(self.max_calls_per_hour - self.calls_in_window, 0)

    @property
    def time_until_reset(self) -> float:
        """Seconds until the oldest call in the window expires (0 when empty)."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if not self._calls:
                return 0.0
            return max(self._calls[0] + self.window_seconds - now, 0.0)

    def try_acquire(self) -> bool:
        """Record a call and return True if the budget allows it."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) >= self.max_calls_per_hour:
                return False
            self._calls.append(now)
            return True

    def wait_for_slot(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """Block until a slot is free. Returns False if ``cancel_event`` fired first.

        The slot is not reserved; callers still go through ``try_acquire()``.
        """
        cancel_event = cancel_event or threading.Event()
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_calls_per_hour:
                    return True
                delay = max(self._calls[0] + self.window_seconds - now, 0.0)
            logger.info(f"Rate limit reached, next slot in {delay:.0f}s")
            if cancel_event.wait(delay):
                return False

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()
