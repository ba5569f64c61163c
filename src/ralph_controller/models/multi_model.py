"""Multi-model configuration: model specs, switch strategies and verification."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ralph_controller.constants import (
    DEFAULT_MAX_VERIFICATION_ATTEMPTS,
    DEFAULT_VERIFIER_INDEX,
    DEFAULT_VERIFY_EVERY_N_ITERATIONS,
)
from ralph_controller.models.provider import ProviderType

# Shorthand provider names accepted by ModelSpec.parse()
_PROVIDER_ALIASES = {
    "claude": ProviderType.CLAUDE_CODE,
    "claude_code": ProviderType.CLAUDE_CODE,
    "codex": ProviderType.CODEX,
    "ollama": ProviderType.OLLAMA,
}


class ModelSwitchStrategy(str, Enum):
    """How the selector moves between configured models."""

    NONE = "none"
    ROUND_ROBIN = "round_robin"
    VERIFICATION = "verification"
    FALLBACK = "fallback"


class VerificationTrigger(str, Enum):
    """What arms a verifier pass under the verification strategy."""

    COMPLETION_SIGNAL = "completion_signal"
    EVERY_N_ITERATIONS = "every_n_iterations"
    MANUAL = "manual"


class ModelSpec(BaseModel):
    """A single model in the rotation / verification / fallback pool."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderType
    model: str = ""
    base_url: Optional[str] = None
    label: Optional[str] = None
    executable_path: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.label or self.model or self.provider.value

    @classmethod
    def parse(cls, shorthand: str) -> "ModelSpec":
        """Build a ModelSpec from ``provider:model`` notation.

        Everything after the first colon is the model id, so
        ``ollama:llama3.1:8b`` keeps its tag.
        """
        provider_name, _, model = shorthand.partition(":")
        provider_name = provider_name.strip().lower()
        provider = _PROVIDER_ALIASES.get(provider_name)
        if provider is None:
            raise ValueError(
                f"Unknown provider '{provider_name}'. "
                f"Valid: {', '.join(sorted(_PROVIDER_ALIASES))}"
            )
        model = model.strip()
        label = f"{provider_name.capitalize()}:{model}" if model else provider_name.capitalize()
        return cls(provider=provider, model=model, label=label)


class VerificationConfig(BaseModel):
    """Settings for the verification strategy."""

    model_config = ConfigDict(frozen=True)

    verifier_index: int = Field(DEFAULT_VERIFIER_INDEX, ge=0)
    trigger: VerificationTrigger = VerificationTrigger.COMPLETION_SIGNAL
    every_n_iterations: int = Field(DEFAULT_VERIFY_EVERY_N_ITERATIONS, ge=1)
    max_verification_attempts: int = Field(DEFAULT_MAX_VERIFICATION_ATTEMPTS, ge=0)


class MultiModelConfig(BaseModel):
    """Ordered model pool plus the strategy used to move through it."""

    model_config = ConfigDict(frozen=True)

    models: List[ModelSpec] = Field(default_factory=list)
    strategy: ModelSwitchStrategy = ModelSwitchStrategy.NONE
    rotate_every_n: int = Field(1, ge=1)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)

    @property
    def is_enabled(self) -> bool:
        return self.strategy != ModelSwitchStrategy.NONE and len(self.models) > 0

    @property
    def required_models(self) -> int:
        if self.strategy == ModelSwitchStrategy.NONE:
            return 0
        return 2 if self.strategy == ModelSwitchStrategy.VERIFICATION else 1

    @property
    def is_valid(self) -> bool:
        if len(self.models) < self.required_models:
            return False
        if self.strategy == ModelSwitchStrategy.VERIFICATION:
            return self.verification.verifier_index < len(self.models)
        return True


class ModelSelectorStats(BaseModel):
    """Snapshot of the selector for status displays."""

    strategy: ModelSwitchStrategy
    current_model_index: int
    current_model_name: str
    total_models: int
    verification_attempts: int
    pending_verification: bool
    is_verification_iteration: bool
