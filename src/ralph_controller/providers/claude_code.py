"""Claude Code executor."""

import logging
from typing import List, Optional

from ralph_controller.providers.base import LineCallback
from ralph_controller.providers.cli_process import CliProcessExecutor

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "claude"


class ClaudeCodeExecutor(CliProcessExecutor):
    """Runs ``claude -p`` non-interactively, one prompt per process."""

    name = "claude_code"

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
        # --dangerously-skip-permissions: the loop is unattended, so any tool
        # permission prompt would block the run until the process is killed.
        command = [self.executable, "-p", "--dangerously-skip-permissions"]
        if self.model:
            command.extend(["--model", self.model])
        source = "argv" if prompt is not None else "stdin"
        logger.debug(f"claude flags: {' '.join(command[1:])} (prompt on {source})")
        # Without a positional prompt, claude -p reads it from stdin
        if prompt is not None:
            command.append(prompt)
        return command
