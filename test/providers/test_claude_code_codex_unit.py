"""Unit tests for the Claude Code and Codex command lines."""

import logging

from ralph_controller.providers.claude_code import ClaudeCodeExecutor
from ralph_controller.providers.codex import CodexExecutor


class TestClaudeCodeCommand:
    def test_default_command(self):
        command = ClaudeCodeExecutor().build_command("implement the parser")

        assert command == ["claude", "-p", "--dangerously-skip-permissions", "implement the parser"]

    def test_model_and_executable(self):
        executor = ClaudeCodeExecutor("/opt/bin/claude", "opus")

        command = executor.build_command("go")

        assert command == [
            "/opt/bin/claude",
            "-p",
            "--dangerously-skip-permissions",
            "--model",
            "opus",
            "go",
        ]

    def test_stdin_prompt_omits_positional(self):
        command = ClaudeCodeExecutor().build_command(None)

        assert command[-1] == "--dangerously-skip-permissions"


class TestCodexCommand:
    def test_default_command(self):
        command = CodexExecutor().build_command("implement the parser")

        assert command == ["codex", "exec", "--yolo", "implement the parser"]

    def test_model(self):
        command = CodexExecutor(model="gpt-5").build_command("go")

        assert command == ["codex", "exec", "--yolo", "--model", "gpt-5", "go"]

    def test_stdin_prompt_uses_dash(self):
        assert CodexExecutor().build_command(None)[-1] == "-"


def test_command_flags_logged_without_prompt(caplog):
    caplog.set_level(logging.DEBUG, logger="ralph_controller.providers")

    ClaudeCodeExecutor(model="opus").build_command("secret task text")
    CodexExecutor().build_command(None)

    messages = [record.getMessage() for record in caplog.records]
    assert (
        "claude flags: -p --dangerously-skip-permissions --model opus (prompt on argv)" in messages
    )
    assert "codex flags: exec --yolo (prompt on stdin)" in messages
    assert not any("secret task text" in message for message in messages)
