"""Integration tests for the Claude Code executor with a real claude CLI.

Usage:
    pytest test/providers/test_claude_code_integration.py -v -o "addopts="
"""

import shutil
import threading
import time

import pytest

from ralph_controller.models.config import RalphConfig
from ralph_controller.providers.claude_code import ClaudeCodeExecutor
from ralph_controller.services.loop_controller import LoopController

pytestmark = [pytest.mark.integration, pytest.mark.slow]


@pytest.fixture(scope="session")
def claude_available():
    if not shutil.which("claude"):
        pytest.skip("claude CLI not installed")
    return True


def test_single_prompt_round_trip(claude_available, tmp_path):
    lines = []
    executor = ClaudeCodeExecutor(on_output=lines.append)

    result = executor.run("Reply with exactly the word PONG and nothing else.", str(tmp_path))

    assert result.success is True
    assert "PONG" in result.stdout
    assert lines


def test_force_stop_interrupts_run(claude_available, tmp_path):
    (tmp_path / "prompt.md").write_text(
        "Count slowly from 1 to 500, one number per line, explaining each number."
    )
    controller = LoopController(RalphConfig(target_directory=str(tmp_path), iteration_delay=0))
    started = threading.Event()
    controller.on_iteration_start.subscribe(lambda iteration: started.set())
    results = []

    thread = threading.Thread(target=lambda: results.append(controller.start()))
    thread.start()
    assert started.wait(30)
    time.sleep(2)

    controller.force_stop()
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert results == [False]


def test_loop_finishes_after_max_iterations(claude_available, tmp_path):
    (tmp_path / "prompt.md").write_text("Create a file named hello.txt containing the word hello.")
    config = RalphConfig(target_directory=str(tmp_path), iteration_delay=0, max_iterations=1)

    assert LoopController(config).start() is True
    assert (tmp_path / "hello.txt").exists()
