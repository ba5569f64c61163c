"""Codex CLI executor."""

import logging
from typing import List, Optional

from ralph_controller.providers.base import LineCallback
from ralph_controller.providers.cli_process import CliProcessExecutor

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "codex"

# codex exec reads the prompt from stdin when given "-"
STDIN_PROMPT_ARGUMENT = "-"


class CodexExecutor(CliProcessExecutor):
    """Runs ``codex exec`` with approvals and sandboxing disabled."""

    name = "codex"

    def __init__(
        self,
        executable: Optional[str] = None,
        model: Optional[str] = None,
        on_output: Optional[LineCallback] = None,
        on_error: Optional[LineCallback] = None,
    ):
        super().__init__(
            executable or DEFAULT_EXECUTABLE, model, on_output=on_output, on_error=on_error
        )

    def build_command(self, prompt: Optional[str]) -> List[str]:
        command = [self.executable, "exec", "--yolo"]
        if self.model:
            command.extend(["--model", self.model])
        source = "argv" if prompt is not None else "stdin"
        logger.debug(f"codex flags: {' '.join(command[1:])} (prompt on {source})")
        command.append(prompt if prompt is not None else STDIN_PROMPT_ARGUMENT)
        return command
