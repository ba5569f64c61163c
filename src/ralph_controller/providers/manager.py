"""Executor factory: maps the active model to an executor instance."""

import logging
from typing import Optional

from ralph_controller.models.config import RalphConfig
from ralph_controller.models.multi_model import ModelSpec
from ralph_controller.models.provider import ProviderType
from ralph_controller.providers.base import BaseExecutor, LineCallback, ProviderError
from ralph_controller.providers.claude_code import ClaudeCodeExecutor
from ralph_controller.providers.codex import CodexExecutor
from ralph_controller.providers.ollama import OllamaExecutor

logger = logging.getLogger(__name__)


def create_executor(
    config: RalphConfig,
    model_spec: Optional[ModelSpec] = None,
    on_output: Optional[LineCallback] = None,
    on_error: Optional[LineCallback] = None,
) -> BaseExecutor:
    """Build the executor for ``model_spec``, or for the config's own provider.

    The config's executable path only applies when ``model_spec`` uses the same
    provider as the config, or is None.
    """
    if model_spec is not None:
        provider = model_spec.provider
        model = model_spec.model or None
        executable = model_spec.executable_path
        if executable is None and provider == config.provider:
            executable = config.executable_path
        base_url = model_spec.base_url
    else:
        provider = config.provider
        model = config.model
        executable = config.executable_path
        base_url = None

    logger.debug(f"Creating executor for provider={provider.value}, model={model}")

    if provider == ProviderType.CLAUDE_CODE:
        return ClaudeCodeExecutor(executable, model, on_output=on_output, on_error=on_error)
    elif provider == ProviderType.CODEX:
        return CodexExecutor(executable, model, on_output=on_output, on_error=on_error)
    elif provider == ProviderType.OLLAMA:
        return OllamaExecutor(base_url, model, on_output=on_output, on_error=on_error)
    else:
        raise ProviderError(f"Unsupported provider: {provider}")
