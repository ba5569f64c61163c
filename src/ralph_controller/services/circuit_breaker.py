"""Circuit breaker that halts the loop when the agent stops making progress.

The breaker watches two signals after every iteration:

- progress: a successful run, any modified files, or a change in the modified
  file count since the previous iteration;
- error repetition: the first line of the error text (truncated) compared
  verbatim with the previous failing iteration.

Either counter reaching its threshold opens the circuit. An open circuit
moves to half-open once it has been open for longer than the recovery
period, and only an explicit ``record_success()`` or ``reset()`` closes it.
"""

import logging
import threading
import time
from typing import Callable, Optional

from ralph_controller.constants import (
    CIRCUIT_RECOVERY_SECONDS,
    ERROR_KEY_MAX_LENGTH,
    NO_PROGRESS_THRESHOLD,
    SAME_ERROR_THRESHOLD,
)
from ralph_controller.models.loop import CircuitState, IterationResult
from ralph_controller.utils.events import EventHook

logger = logging.getLogger(__name__)


def extract_error_key(error: str) -> str:
    """First line of the error, truncated to ERROR_KEY_MAX_LENGTH characters."""
    first_line = error.split("\n", 1)[0]
    return first_line[:ERROR_KEY_MAX_LENGTH]


class CircuitBreaker:
    """Stagnation and error-repetition detector."""

    def __init__(
        self,
        no_progress_threshold: int = NO_PROGRESS_THRESHOLD,
        same_error_threshold: int = SAME_ERROR_THRESHOLD,
        recovery_seconds: float = CIRCUIT_RECOVERY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.no_progress_threshold = no_progress_threshold
        self.same_error_threshold = same_error_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._no_progress_count = 0
        self._same_error_count = 0
        self._last_error: Optional[str] = None
        self._last_file_count = 0
        self._last_state_change = clock()
        self.open_reason: Optional[str] = None
        # (state, reason)
        self.on_state_changed = EventHook("circuit_state_changed")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def no_progress_count(self) -> int:
        return self._no_progress_count

    @property
    def same_error_count(self) -> int:
        return self._same_error_count

    def record_result(self, result: IterationResult, files_modified: int) -> None:
        """Update the counters with one iteration's outcome and re-evaluate."""
        with self._lock:
            if result.success or files_modified > 0 or files_modified != self._last_file_count:
                self._no_progress_count = 0
                self._last_file_count = files_modified
            else:
                self._no_progress_count += 1

            if not result.success and result.stderr:
                error_key = extract_error_key(result.stderr)
                if error_key == self._last_error:
                    self._same_error_count += 1
                else:
                    self._same_error_count = 1
                    self._last_error = error_key
            else:
                self._same_error_count = 0
                self._last_error = None

            self._evaluate_state()

    def can_execute(self) -> bool:
        with self._lock:
            return self._state != CircuitState.OPEN

    def record_success(self) -> None:
        """Confirm recovery: closes a half-open circuit and clears the counters."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.CLOSED, None)
            self._no_progress_count = 0
            self._same_error_count = 0

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._no_progress_count = 0
            self._same_error_count = 0
            self._last_error = None
            self._last_file_count = 0
            self.open_reason = None
            self._last_state_change = self._clock()
            logger.info("Circuit breaker reset")
            self.on_state_changed.emit(CircuitState.CLOSED, None)

    def _evaluate_state(self) -> None:
        if self._no_progress_count >= self.no_progress_threshold:
            self._set_state(
                CircuitState.OPEN, f"No progress for {self._no_progress_count} loops"
            )
            return

        if self._same_error_count >= self.same_error_threshold:
            self._set_state(
                CircuitState.OPEN,
                f"Same error repeated {self._same_error_count} times: {self._last_error}",
            )
            return

        if self._state == CircuitState.OPEN:
            if self._clock() - self._last_state_change > self.recovery_seconds:
                self._set_state(CircuitState.HALF_OPEN, "Attempting recovery")

    def _set_state(self, new_state: CircuitState, reason: Optional[str]) -> None:
        if self._state == new_state:
            return
        self._state = new_state
        self.open_reason = reason
        self._last_state_change = self._clock()
        if new_state == CircuitState.OPEN:
            logger.warning(f"Circuit breaker opened: {reason}")
        else:
            logger.info(f"Circuit breaker -> {new_state.value}")
        self.on_state_changed.emit(new_state, reason)
