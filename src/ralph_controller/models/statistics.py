"""Run statistics for the loop controller."""

import threading
import time
from typing import Callable, Optional

from ralph_controller.constants import DEFAULT_COST_PER_HOUR


class LoopStatistics:
    """Thread-safe iteration counters and timing for a single run."""

    def __init__(
        self,
        cost_per_hour: float = DEFAULT_COST_PER_HOUR,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = threading.Lock()
        self._clock = clock
        self.cost_per_hour = cost_per_hour
        self._start_time = clock()
        self._current_iteration = 0
        self._completed_iterations = 0
        self._failed_iterations = 0
        self._iteration_start: Optional[float] = None

    @property
    def current_iteration(self) -> int:
        """1-based number of the iteration started most recently."""
        return self._current_iteration

    @property
    def completed_iterations(self) -> int:
        return self._completed_iterations

    @property
    def failed_iterations(self) -> int:
        return self._failed_iterations

    @property
    def total_duration(self) -> float:
        return self._clock() - self._start_time

    @property
    def estimated_cost(self) -> float:
        return self.total_duration / 3600.0 * self.cost_per_hour

    @property
    def average_iteration_duration(self) -> float:
        if self._completed_iterations == 0:
            return 0.0
        return self.total_duration / self._completed_iterations

    @property
    def current_iteration_duration(self) -> float:
        start = self._iteration_start
        if start is None:
            return 0.0
        return self._clock() - start

    def start_iteration(self) -> int:
        with self._lock:
            self._current_iteration += 1
            self._iteration_start = self._clock()
            return self._current_iteration

    def complete_iteration(self, success: bool) -> None:
        with self._lock:
            if success:
                self._completed_iterations += 1
            else:
                self._failed_iterations += 1
            self._iteration_start = None

    def reset(self) -> None:
        with self._lock:
            self._start_time = self._clock()
            self._current_iteration = 0
            self._completed_iterations = 0
            self._failed_iterations = 0
            self._iteration_start = None


def format_duration(seconds: float) -> str:
    """Format seconds as ``1h 5m``, ``3m 20s`` or ``45s``."""
    seconds = int(max(seconds, 0))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_cost(cost: float) -> str:
    return f"${cost:.2f}"
