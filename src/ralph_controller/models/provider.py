"""Provider type definitions."""

from enum import Enum


class ProviderType(str, Enum):
    """Executor backends the controller can drive."""

    CLAUDE_CODE = "claude_code"
    CODEX = "codex"
    OLLAMA = "ollama"
