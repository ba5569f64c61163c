"""Model selection for multi-model runs: rotation, verification and fallback."""

import logging
from typing import Optional

from ralph_controller.models.multi_model import (
    ModelSelectorStats,
    ModelSpec,
    ModelSwitchStrategy,
    MultiModelConfig,
    VerificationTrigger,
)
from ralph_controller.utils.events import EventHook

logger = logging.getLogger(__name__)


class ModelSelector:
    """Picks the model for each iteration according to the configured strategy.

    Events:
        on_model_switch(model, reason)
        on_verification_start(model)
        on_verification_complete(passed, files_changed)
    """

    def __init__(self, config: Optional[MultiModelConfig] = None):
        self._config = config or MultiModelConfig()
        self._current_index = 0
        self._iterations_since_rotation = 0
        self._iterations_since_verification = 0
        self._verification_attempts = 0
        self._pending_verification = False
        self._files_modified_before_verification: Optional[int] = None
        self.is_verification_iteration = False

        self.on_model_switch = EventHook("model_switch")
        self.on_verification_start = EventHook("verification_start")
        self.on_verification_complete = EventHook("verification_complete")

    @property
    def config(self) -> MultiModelConfig:
        return self._config

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def pending_verification(self) -> bool:
        return self._pending_verification

    @property
    def verification_attempts(self) -> int:
        return self._verification_attempts

    @property
    def files_modified_before_verification(self) -> int:
        return self._files_modified_before_verification or 0

    @property
    def _verifier_index(self) -> int:
        return self._config.verification.verifier_index

    @property
    def _verifier(self) -> Optional[ModelSpec]:
        if self._verifier_index < len(self._config.models):
            return self._config.models[self._verifier_index]
        return None

    def get_current_model(self) -> Optional[ModelSpec]:
        """Model for the next iteration, or None when multi-model is disabled.

        Under the verification strategy with a pass pending, this returns the
        verifier and marks the iteration as a verification iteration.
        """
        if not self._config.is_enabled:
            return None

        if (
            self._config.strategy == ModelSwitchStrategy.VERIFICATION
            and self._pending_verification
        ):
            verifier = self._verifier
            if verifier is not None:
                self.is_verification_iteration = True
                return verifier

        self.is_verification_iteration = False
        return self._config.models[self._current_index]

    def after_iteration(self, files_modified: int) -> None:
        """Advance strategy state once an iteration has finished."""
        if not self._config.is_enabled:
            return

        strategy = self._config.strategy
        if strategy == ModelSwitchStrategy.ROUND_ROBIN:
            self._handle_round_robin_advance()
        elif strategy == ModelSwitchStrategy.VERIFICATION:
            self._handle_verification_result(files_modified)
        # Fallback is driven by on_iteration_failed()

    def on_completion_detected(self, files_modified: int) -> bool:
        """Arm a verifier pass. Returns False when no pass could be armed."""
        if self._config.strategy != ModelSwitchStrategy.VERIFICATION:
            return False
        return self._arm_verification(files_modified, "completion detected")

    def request_verification(self, files_modified: int) -> bool:
        """Arm a verifier pass on demand (the manual trigger)."""
        if self._config.strategy != ModelSwitchStrategy.VERIFICATION:
            return False
        return self._arm_verification(files_modified, "manual request")

    def check_verification_passed(self, files_modified_after: int) -> bool:
        """Decide whether the verifier left the working tree untouched.

        Fires on_verification_complete with the pass flag and the non-negative
        file delta. A failure clears the pending pass so the next iteration
        returns to the primary model.
        """
        if self._files_modified_before_verification is None:
            return False

        before = self._files_modified_before_verification
        passed = files_modified_after <= before
        files_changed = max(0, files_modified_after - before)
        logger.info(
            f"Verification {'passed' if passed else 'failed'} "
            f"(files before={before}, after={files_modified_after})"
        )
        self.on_verification_complete.emit(passed, files_changed)

        if not passed:
            self.reset_verification()
        return passed

    def on_iteration_failed(self, is_rate_limit: bool = False) -> None:
        """Move to the next model under the fallback strategy."""
        if self._config.strategy != ModelSwitchStrategy.FALLBACK:
            return
        if len(self._config.models) <= 1:
            return

        self._current_index = (self._current_index + 1) % len(self._config.models)
        new_model = self._config.models[self._current_index]
        reason = "rate limit" if is_rate_limit else "failure"
        logger.info(f"Falling back to {new_model.display_name} due to {reason}")
        self.on_model_switch.emit(new_model, f"Fallback due to {reason}")

    def reset_verification(self) -> None:
        self._pending_verification = False
        self.is_verification_iteration = False

    def reset(self) -> None:
        self._current_index = 0
        self._iterations_since_rotation = 0
        self._iterations_since_verification = 0
        self._verification_attempts = 0
        self._pending_verification = False
        self._files_modified_before_verification = None
        self.is_verification_iteration = False

    def get_stats(self) -> ModelSelectorStats:
        current = None
        if self._config.is_enabled:
            current = self._config.models[self._current_index]
        return ModelSelectorStats(
            strategy=self._config.strategy,
            current_model_index=self._current_index,
            current_model_name=current.display_name if current else "Default",
            total_models=len(self._config.models),
            verification_attempts=self._verification_attempts,
            pending_verification=self._pending_verification,
            is_verification_iteration=self.is_verification_iteration,
        )

    def _arm_verification(self, files_modified: int, reason: str) -> bool:
        max_attempts = self._config.verification.max_verification_attempts
        if self._verification_attempts >= max_attempts:
            logger.info(f"Verification attempts exhausted ({max_attempts}), not arming")
            return False

        self._pending_verification = True
        self._files_modified_before_verification = files_modified
        self._verification_attempts += 1
        self._iterations_since_verification = 0

        verifier = self._verifier
        logger.info(
            f"Verification armed ({reason}), attempt "
            f"{self._verification_attempts}/{max_attempts}"
        )
        if verifier is not None:
            self.on_verification_start.emit(verifier)
        return True

    def _handle_round_robin_advance(self) -> None:
        self._iterations_since_rotation += 1
        if self._iterations_since_rotation < self._config.rotate_every_n:
            return

        self._iterations_since_rotation = 0
        previous = self._config.models[self._current_index]
        self._current_index = (self._current_index + 1) % len(self._config.models)
        new_model = self._config.models[self._current_index]
        if new_model != previous:
            self.on_model_switch.emit(new_model, "Round-robin rotation")

    def _handle_verification_result(self, files_modified: int) -> None:
        if self.is_verification_iteration:
            before = self.files_modified_before_verification
            if files_modified > before:
                # Verifier changed files; return to the primary model.
                # The attempt counter is kept so retries stay bounded.
                self._pending_verification = False
                self.is_verification_iteration = False
            return

        verification = self._config.verification
        if verification.trigger == VerificationTrigger.EVERY_N_ITERATIONS:
            self._iterations_since_verification += 1
            if self._iterations_since_verification >= verification.every_n_iterations:
                self._arm_verification(files_modified, f"every {verification.every_n_iterations} iterations")
