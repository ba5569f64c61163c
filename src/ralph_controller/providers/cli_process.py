"""Executor that runs an agent CLI as a child process."""

import logging
import os
import re
import signal
import subprocess
import threading
from typing import IO, List, Optional

from ralph_controller.models.loop import IterationResult
from ralph_controller.providers.base import BaseExecutor, LineCallback

logger = logging.getLogger(__name__)

# CSI and OSC escape sequences stripped from captured lines
ANSI_CODE_PATTERN = r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07]*(?:\x07|\x1b\\)"

# Prompts longer than this are piped through stdin instead of argv
MAX_ARGUMENT_PROMPT_LENGTH = 100_000

# How often the wait loop re-checks the cancellation event
PROCESS_POLL_SECONDS = 0.2

READER_JOIN_TIMEOUT = 5.0

# SIGKILL is POSIX only
KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class CliProcessExecutor(BaseExecutor):
    """Spawns ``build_command()`` and streams its stdout/stderr line by line.

    Subclasses only decide the command line. The process gets its own session
    so terminal signals aimed at the controller do not reach it directly.
    """

    name = "cli"

    def __init__(
        self,
        executable: str,
        model: Optional[str] = None,
        on_output: Optional[LineCallback] = None,
        on_error: Optional[LineCallback] = None,
    ):
        super().__init__(on_output=on_output, on_error=on_error)
        self.executable = executable
        self.model = model
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def build_command(self, prompt: Optional[str]) -> List[str]:
        """Command line for one run. ``prompt`` is None when it is sent on stdin."""
        raise NotImplementedError

    def run(
        self,
        prompt: str,
        working_directory: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> IterationResult:
        use_stdin = len(prompt) > MAX_ARGUMENT_PROMPT_LENGTH
        command = self.build_command(None if use_stdin else prompt)
        logger.info(f"Starting {self.name}: {command[0]} (cwd={working_directory})")

        try:
            process = subprocess.Popen(
                command,
                cwd=working_directory,
                stdin=subprocess.PIPE if use_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=os.name != "nt",
            )
        except OSError as e:
            message = f"Failed to start {self.name}: {e}"
            logger.error(message)
            self._emit_error(message)
            return IterationResult(success=False, exit_code=-1, stderr=message)

        with self._lock:
            self._process = process

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(
                target=self._read_stream,
                args=(process.stdout, stdout_lines, self._emit_output),
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stream,
                args=(process.stderr, stderr_lines, self._emit_error),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        if use_stdin and process.stdin is not None:
            try:
                process.stdin.write(prompt)
                process.stdin.close()
            except OSError as e:
                logger.warning(f"Could not write prompt to {self.name} stdin: {e}")

        try:
            self._wait(process, cancel_event)
        finally:
            for reader in readers:
                reader.join(timeout=READER_JOIN_TIMEOUT)
            with self._lock:
                self._process = None

        exit_code = process.returncode if process.returncode is not None else -1
        logger.info(f"{self.name} exited with code {exit_code}")
        return IterationResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )

    def terminate(self, grace_period: float) -> None:
        with self._lock:
            process = self._process
        if process is None:
            return

        if process.poll() is None:
            logger.info(f"Interrupting {self.name} (pid={process.pid})")
            self._signal_group(process, signal.SIGINT)
            try:
                process.wait(timeout=grace_period)
            except subprocess.TimeoutExpired:
                logger.warning(f"{self.name} ignored interrupt for {grace_period}s, killing")
        # Descendants that outlive the leader still hold the output pipes
        self._signal_group(process, KILL_SIGNAL)
        process.wait()

    @staticmethod
    def _signal_group(process: subprocess.Popen, sig: int) -> None:
        """Signal the whole process group; the child leads its own session."""
        try:
            if os.name == "nt":
                if sig == signal.SIGINT:
                    process.terminate()
                else:
                    process.kill()
            else:
                os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _wait(self, process: subprocess.Popen, cancel_event: Optional[threading.Event]) -> None:
        while True:
            try:
                process.wait(timeout=PROCESS_POLL_SECONDS)
                return
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                self.terminate(0)
                process.wait()
                return

    @staticmethod
    def _read_stream(stream: Optional[IO[str]], sink: List[str], callback: LineCallback) -> None:
        if stream is None:
            return
        with stream:
            for line in stream:
                line = re.sub(ANSI_CODE_PATTERN, "", line.rstrip("\r\n"))
                sink.append(line)
                callback(line)
