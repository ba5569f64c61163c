"""Base executor interface."""

import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from ralph_controller.models.loop import IterationResult

LineCallback = Callable[[str], None]


class ProviderError(Exception):
    """Exception raised when an executor cannot be built or started."""

    pass


class BaseExecutor(ABC):
    """Runs one agent invocation per call and reports the aggregated result.

    ``on_output`` and ``on_error`` receive output lines as they arrive; the
    returned IterationResult carries the full captured text either way.
    """

    def __init__(
        self,
        on_output: Optional[LineCallback] = None,
        on_error: Optional[LineCallback] = None,
    ):
        self.on_output = on_output
        self.on_error = on_error

    @abstractmethod
    def run(
        self,
        prompt: str,
        working_directory: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> IterationResult:
        """Run the agent against ``prompt`` inside ``working_directory``."""
        pass

    @abstractmethod
    def terminate(self, grace_period: float) -> None:
        """Interrupt the in-flight run: soft signal first, hard kill after ``grace_period``."""
        pass

    def _emit_output(self, line: str) -> None:
        if self.on_output is not None:
            self.on_output(line)

    def _emit_error(self, line: str) -> None:
        if self.on_error is not None:
            self.on_error(line)
