"""Immutable run configuration for the loop controller."""

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ralph_controller.constants import (
    COMPLETION_SIGNAL_THRESHOLD,
    DEFAULT_AGENTS_FILE,
    DEFAULT_COST_PER_HOUR,
    DEFAULT_ITERATION_DELAY,
    DEFAULT_MAX_CALLS_PER_HOUR,
    DEFAULT_PLAN_FILE,
    DEFAULT_PROMPT_FILE,
    DEFAULT_SPECS_DIRECTORY,
    FORCE_STOP_GRACE_PERIOD,
    NO_PROGRESS_THRESHOLD,
    PROVIDER_RATE_LIMIT_FALLBACK_SECONDS,
    SAME_ERROR_THRESHOLD,
    TEST_ONLY_LOOP_THRESHOLD,
)
from ralph_controller.models.multi_model import MultiModelConfig
from ralph_controller.models.provider import ProviderType


class RalphConfig(BaseModel):
    """Settings for one controller run.

    Instances are frozen; derive variants with ``config.model_copy(update={...})``.
    """

    model_config = ConfigDict(frozen=True)

    target_directory: str
    provider: ProviderType = ProviderType.CLAUDE_CODE
    model: Optional[str] = None
    executable_path: Optional[str] = None
    multi_model: Optional[MultiModelConfig] = None

    prompt_file: str = DEFAULT_PROMPT_FILE
    plan_file: str = DEFAULT_PLAN_FILE
    agents_file: str = DEFAULT_AGENTS_FILE
    specs_directory: str = DEFAULT_SPECS_DIRECTORY

    max_iterations: Optional[int] = Field(None, ge=1)
    iteration_delay: float = Field(DEFAULT_ITERATION_DELAY, ge=0)
    max_calls_per_hour: int = Field(DEFAULT_MAX_CALLS_PER_HOUR, ge=1)
    cost_per_hour: float = Field(DEFAULT_COST_PER_HOUR, ge=0)

    no_progress_threshold: int = Field(NO_PROGRESS_THRESHOLD, ge=1)
    same_error_threshold: int = Field(SAME_ERROR_THRESHOLD, ge=1)
    completion_signal_threshold: int = Field(COMPLETION_SIGNAL_THRESHOLD, ge=1)
    test_only_loop_threshold: int = Field(TEST_ONLY_LOOP_THRESHOLD, ge=1)

    enable_circuit_breaker: bool = True
    enable_response_analyzer: bool = True
    auto_exit_on_completion: bool = True
    enable_final_verification: bool = True

    force_stop_grace_period: float = Field(FORCE_STOP_GRACE_PERIOD, ge=0)
    provider_rate_limit_fallback: float = Field(PROVIDER_RATE_LIMIT_FALLBACK_SECONDS, ge=0)

    @property
    def prompt_file_path(self) -> str:
        return os.path.join(self.target_directory, self.prompt_file)

    @property
    def plan_file_path(self) -> str:
        return os.path.join(self.target_directory, self.plan_file)

    @property
    def agents_file_path(self) -> str:
        return os.path.join(self.target_directory, self.agents_file)

    @property
    def specs_directory_path(self) -> str:
        return os.path.join(self.target_directory, self.specs_directory)

    @property
    def multi_model_enabled(self) -> bool:
        return self.multi_model is not None and self.multi_model.is_enabled
