"""Loop controller: runs the agent repeatedly and decides when to stop.

The loop runs synchronously on the thread that calls ``start()``. ``pause()``,
``resume()``, ``stop()``, ``force_stop()``, ``inject_prompt()`` and
``request_verification()`` are safe to call from any other thread; they only
touch the state guarded by ``_state_lock`` and the cancellation event.

Every blocking wait inside the loop (pause gate, inter-iteration delay, rate
limiter slot, provider cooldown) observes the cancellation event and unwinds
with ``LoopCancelled``, which ``start()`` turns into ``on_loop_complete(False)``.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from ralph_controller.constants import MAX_WAIT_CHUNK_SECONDS, PAUSE_POLL_SECONDS
from ralph_controller.models.analysis import AnalysisResult
from ralph_controller.models.config import RalphConfig
from ralph_controller.models.loop import IterationResult, LoopState
from ralph_controller.models.multi_model import ModelSpec, ModelSwitchStrategy
from ralph_controller.models.statistics import LoopStatistics, format_duration
from ralph_controller.providers.base import BaseExecutor
from ralph_controller.providers.manager import create_executor
from ralph_controller.services.circuit_breaker import CircuitBreaker
from ralph_controller.services.final_verification import (
    build_verification_prompt,
    parse_verification_result,
)
from ralph_controller.services.model_selector import ModelSelector
from ralph_controller.services.rate_limiter import RateLimiter
from ralph_controller.services.response_analyzer import ResponseAnalyzer, detect_rate_limit
from ralph_controller.services.workspace_service import count_modified_files
from ralph_controller.utils.events import EventHook

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[..., BaseExecutor]


class InvalidStateError(RuntimeError):
    """A lifecycle method was called from a state that does not allow it."""


class LoopCancelled(Exception):
    """Raised inside the loop when the cancellation event fires during a wait."""


class PromptFileNotFoundError(FileNotFoundError):
    """The prompt file the loop feeds to the agent does not exist."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoopController:
    """Iteration state machine tying the executor to the decision components.

    Events (all emitted synchronously on the loop thread unless noted):
        on_state_changed(state)            - also from control threads
        on_iteration_start(iteration)
        on_iteration_complete(iteration, result)
        on_analysis(analysis)
        on_output(line) / on_error(line)
        on_model_switch(model, reason)
        on_verification_start(model)
        on_verification_complete(passed, files_changed)
        on_final_verification_start()
        on_final_verification_complete(all_complete, incomplete_tasks)
        on_circuit_state_changed(state, reason)
        on_loop_complete(finished)
    """

    def __init__(
        self,
        config: RalphConfig,
        executor_factory: ExecutorFactory = create_executor,
        file_counter: Callable[[str], int] = count_modified_files,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self._executor_factory = executor_factory
        self._count_modified_files = file_counter
        self._now = now

        self.circuit_breaker = CircuitBreaker(
            no_progress_threshold=config.no_progress_threshold,
            same_error_threshold=config.same_error_threshold,
        )
        self.rate_limiter = RateLimiter(config.max_calls_per_hour)
        self.response_analyzer = ResponseAnalyzer(
            completion_signal_threshold=config.completion_signal_threshold,
            test_only_loop_threshold=config.test_only_loop_threshold,
            clock=now,
        )
        self.model_selector = ModelSelector(config.multi_model)
        self.statistics = LoopStatistics(config.cost_per_hour)

        # Guards _state, _pause_gate, _injected_prompt and _verification_requested
        self._state_lock = threading.RLock()
        self._state = LoopState.IDLE
        self._pause_gate: Optional[threading.Event] = None
        self._cancel_event = threading.Event()
        self._injected_prompt: Optional[str] = None
        self._verification_requested = False

        self._executor_lock = threading.Lock()
        self._current_executor: Optional[BaseExecutor] = None

        self._pending_final_verification = False
        self._in_final_verification = False
        self._provider_rate_limit_until: Optional[datetime] = None
        self._last_files_modified = 0

        self.on_state_changed = EventHook("state_changed")
        self.on_iteration_start = EventHook("iteration_start")
        self.on_iteration_complete = EventHook("iteration_complete")
        self.on_analysis = EventHook("analysis")
        self.on_output = EventHook("output")
        self.on_error = EventHook("error")
        self.on_model_switch = EventHook("model_switch")
        self.on_verification_start = EventHook("verification_start")
        self.on_verification_complete = EventHook("verification_complete")
        self.on_final_verification_start = EventHook("final_verification_start")
        self.on_final_verification_complete = EventHook("final_verification_complete")
        self.on_circuit_state_changed = EventHook("circuit_state_changed")
        self.on_loop_complete = EventHook("loop_complete")

        self.model_selector.on_model_switch.subscribe(self.on_model_switch.emit)
        self.model_selector.on_verification_start.subscribe(self.on_verification_start.emit)
        self.model_selector.on_verification_complete.subscribe(self.on_verification_complete.emit)
        self.circuit_breaker.on_state_changed.subscribe(self.on_circuit_state_changed.emit)

    @property
    def state(self) -> LoopState:
        with self._state_lock:
            return self._state

    @property
    def provider_rate_limit_until(self) -> Optional[datetime]:
        return self._provider_rate_limit_until

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Run the loop on the calling thread until it stops or is cancelled.

        Returns True when the loop finished on its own (completion, stop,
        max iterations, open circuit) and False when it was cancelled or could
        not read its prompt. Raises InvalidStateError unless Idle.
        """
        with self._state_lock:
            if self._state != LoopState.IDLE:
                raise InvalidStateError(f"Cannot start loop in state {self._state.value}")
            self._cancel_event = threading.Event()
            self._pause_gate = None
            self._set_state(LoopState.RUNNING)

        self.statistics.reset()
        self.model_selector.reset()
        self._pending_final_verification = False
        self._in_final_verification = False
        logger.info(f"Loop started in {self.config.target_directory}")

        finished = False
        try:
            self._run_loop()
            finished = not self._cancel_event.is_set()
        except LoopCancelled:
            logger.info("Loop cancelled")
        except PromptFileNotFoundError as e:
            logger.error(str(e))
            self.on_error.emit(str(e))
        finally:
            with self._executor_lock:
                self._current_executor = None
            with self._state_lock:
                self._pause_gate = None
                self._set_state(LoopState.IDLE)

        logger.info(
            f"Loop complete (finished={finished}): "
            f"{self.statistics.completed_iterations} completed, "
            f"{self.statistics.failed_iterations} failed"
        )
        self.on_loop_complete.emit(finished)
        return finished

    def pause(self) -> None:
        with self._state_lock:
            if self._state != LoopState.RUNNING:
                return
            self._pause_gate = threading.Event()
            self._set_state(LoopState.PAUSED)

    def resume(self) -> None:
        with self._state_lock:
            if self._state != LoopState.PAUSED:
                return
            self._release_pause_gate()
            self._set_state(LoopState.RUNNING)

    def stop(self) -> None:
        """Stop after the current iteration completes."""
        with self._state_lock:
            if self._state in (LoopState.IDLE, LoopState.STOPPING):
                return
            self._set_state(LoopState.STOPPING)
            self._release_pause_gate()

    def force_stop(self) -> None:
        """Stop, interrupt the in-flight executor run, then cancel every wait."""
        self.stop()
        with self._executor_lock:
            executor = self._current_executor
        if executor is not None:
            executor.terminate(self.config.force_stop_grace_period)
        self._cancel_event.set()

    def inject_prompt(self, prompt: str) -> None:
        """Use ``prompt`` instead of the prompt file for the next iteration only."""
        with self._state_lock:
            self._injected_prompt = prompt

    def request_verification(self) -> None:
        """Arm a verifier pass before the next iteration (manual trigger)."""
        with self._state_lock:
            self._verification_requested = True

    def _set_state(self, new_state: LoopState) -> None:
        if self._state == new_state:
            return
        self._state = new_state
        logger.info(f"Loop state -> {new_state.value}")
        self.on_state_changed.emit(new_state)

    def _release_pause_gate(self) -> None:
        if self._pause_gate is not None:
            self._pause_gate.set()
            self._pause_gate = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._cancel_event.is_set():
            if self.state == LoopState.STOPPING:
                break

            if self._wait_for_provider_rate_limit():
                continue

            max_iterations = self.config.max_iterations
            if max_iterations is not None and self.statistics.current_iteration >= max_iterations:
                self.on_output.emit(f"Max iterations ({max_iterations}) reached")
                break

            if self.config.enable_circuit_breaker and not self.circuit_breaker.can_execute():
                self.on_error.emit(f"Circuit breaker is open: {self.circuit_breaker.open_reason}")
                break

            if not self.rate_limiter.try_acquire():
                self.on_output.emit(
                    f"Rate limit reached ({self.rate_limiter.max_calls_per_hour}/hour). "
                    f"Waiting {format_duration(self.rate_limiter.time_until_reset)}..."
                )
                if not self.rate_limiter.wait_for_slot(self._cancel_event):
                    raise LoopCancelled()
                continue

            with self._state_lock:
                gate = self._pause_gate if self._state == LoopState.PAUSED else None
            if gate is not None:
                self._wait_for_gate(gate)
                continue

            self._run_iteration()

            if self.config.iteration_delay > 0 and self.state == LoopState.RUNNING:
                self._sleep(self.config.iteration_delay)

    def _sleep(self, seconds: float) -> None:
        """Cancellable sleep; returns early once the loop is stopping."""
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or self.state == LoopState.STOPPING:
                return
            if self._cancel_event.wait(min(remaining, PAUSE_POLL_SECONDS)):
                raise LoopCancelled()

    def _wait_for_gate(self, gate: threading.Event) -> None:
        logger.info("Loop paused, waiting for resume")
        while not gate.wait(PAUSE_POLL_SECONDS):
            if self._cancel_event.is_set():
                raise LoopCancelled()

    def _wait_for_provider_rate_limit(self) -> bool:
        """Sleep one chunk of an active provider cooldown. True if still cooling down."""
        until = self._provider_rate_limit_until
        if until is None:
            return False

        remaining = (until - self._now()).total_seconds()
        if remaining <= 0:
            self._provider_rate_limit_until = None
            self.on_output.emit("Provider rate limit window elapsed, resuming")
            return False

        self._sleep(min(remaining, MAX_WAIT_CHUNK_SECONDS))
        return True

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def _run_iteration(self) -> None:
        prompt = self._resolve_prompt()

        with self._state_lock:
            verification_requested = self._verification_requested
            self._verification_requested = False
        if verification_requested and not self.model_selector.request_verification(
            self._last_files_modified
        ):
            self.on_output.emit("Verification request ignored: no verifier pass available")

        model = self.model_selector.get_current_model()
        is_verification = self.model_selector.is_verification_iteration
        if is_verification and model is not None:
            self.on_output.emit(f"[Verification] Running with {model.display_name}...")
        elif model is not None:
            self.on_output.emit(f"[Model: {model.display_name}]")

        iteration = self.statistics.start_iteration()
        self.on_iteration_start.emit(iteration)

        result = self._execute(prompt, model)
        self.statistics.complete_iteration(result.success)
        self.on_iteration_complete.emit(iteration, result)

        if self._cancel_event.is_set():
            raise LoopCancelled()

        files_modified = self._count_modified_files(self.config.target_directory)
        self._last_files_modified = files_modified

        if self.config.enable_circuit_breaker:
            self.circuit_breaker.record_result(result, files_modified)

        self.model_selector.after_iteration(files_modified)

        if is_verification:
            self._finish_verification_iteration(files_modified)
        elif self._in_final_verification:
            self._finish_final_verification(result)
        elif self.config.enable_response_analyzer:
            analysis = self.response_analyzer.analyze(result)
            self.on_analysis.emit(analysis)
            if analysis.should_exit and self.config.auto_exit_on_completion:
                self._handle_completion(analysis, files_modified)

        self._handle_rate_limit(result)

    def _resolve_prompt(self) -> str:
        if self._pending_final_verification:
            self._pending_final_verification = False
            self._in_final_verification = True
            self.on_final_verification_start.emit()
            self.on_output.emit("[Final Verification] Verifying all tasks are complete...")
            return build_verification_prompt(self.config.plan_file_path)

        with self._state_lock:
            injected = self._injected_prompt
            self._injected_prompt = None
        if injected is not None:
            return injected

        path = Path(self.config.prompt_file_path)
        if not path.is_file():
            raise PromptFileNotFoundError(f"Prompt file not found: {path}")
        return path.read_text(encoding="utf-8")

    def _execute(self, prompt: str, model: Optional[ModelSpec]) -> IterationResult:
        """Run the executor; any exception becomes a failed result."""
        try:
            executor = self._executor_factory(
                self.config, model, on_output=self.on_output.emit, on_error=self.on_error.emit
            )
            with self._executor_lock:
                self._current_executor = executor
            return executor.run(prompt, self.config.target_directory, self._cancel_event)
        except Exception as e:
            message = f"Executor failed: {e}"
            logger.error(message)
            self.on_error.emit(message)
            return IterationResult(success=False, exit_code=-1, stderr=message)
        finally:
            with self._executor_lock:
                self._current_executor = None

    def _finish_verification_iteration(self, files_modified: int) -> None:
        if self.model_selector.check_verification_passed(files_modified):
            self.on_output.emit("[Verification PASSED] No changes made - task complete!")
            self.stop()
        else:
            self.on_output.emit("[Verification FAILED] Verifier made changes - continuing work...")

    def _finish_final_verification(self, result: IterationResult) -> None:
        self._in_final_verification = False
        verification = parse_verification_result(result.combined_output)
        if verification is None:
            self.on_output.emit("[Final Verification] Could not parse structured result, continuing...")
            return

        self.on_final_verification_complete.emit(
            verification.all_tasks_complete, list(verification.incomplete_tasks)
        )
        if verification.all_tasks_complete:
            self.on_output.emit(
                f"[Final Verification PASSED] All {len(verification.completed_tasks)} "
                f"tasks verified complete!"
            )
            if verification.summary:
                self.on_output.emit(f"Summary: {verification.summary}")
            self.stop()
            return

        self.on_output.emit(
            f"[Final Verification INCOMPLETE] Found {len(verification.incomplete_tasks)} "
            f"incomplete task(s):"
        )
        for task in verification.incomplete_tasks:
            self.on_output.emit(f"  - {task}")
        self.on_output.emit("Continuing work on incomplete tasks...")

    def _handle_completion(self, analysis: AnalysisResult, files_modified: int) -> None:
        reason = analysis.exit_reason
        multi_model = self.config.multi_model
        if (
            self.config.multi_model_enabled
            and multi_model is not None
            and multi_model.strategy == ModelSwitchStrategy.VERIFICATION
        ):
            if self.model_selector.on_completion_detected(files_modified):
                self.on_output.emit(f"Completion detected: {reason} - running model verification...")
                return
            self.on_output.emit("Model verification attempts exhausted")

        if self.config.enable_final_verification:
            self._pending_final_verification = True
            self.on_output.emit(f"Completion detected: {reason} - running final verification...")
            return

        self.on_output.emit(f"Completion detected: {reason}")
        self.stop()

    def _handle_rate_limit(self, result: IterationResult) -> None:
        now = self._now()
        info = detect_rate_limit(result.combined_output, now)
        if info is None:
            if not result.success:
                self.model_selector.on_iteration_failed(is_rate_limit=False)
            return

        self.model_selector.on_iteration_failed(is_rate_limit=True)
        reset_at = info.reset_at or now + timedelta(seconds=self.config.provider_rate_limit_fallback)
        self._provider_rate_limit_until = reset_at

        reset_text = reset_at.astimezone().strftime("%b %d %I:%M %p")
        if info.reset_at is None:
            reset_text += " (fallback)"
        message = "Provider rate limit detected"
        if info.message:
            message += f": {info.message}"
        logger.warning(f"{message}; cooling down until {reset_at.isoformat()}")
        self.on_output.emit(f"{message}. Waiting until {reset_text}.")
