"""Ollama executor: a streaming tool-calling agent over the OpenAI-compatible API."""

import json
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from ralph_controller.constants import DEFAULT_OLLAMA_BASE_URL, DEFAULT_OLLAMA_MODEL
from ralph_controller.models.loop import IterationResult
from ralph_controller.providers.base import BaseExecutor, LineCallback
from ralph_controller.providers.ollama_tools import (
    TOOL_DEFINITIONS,
    ToolCall,
    WorkspaceTools,
    parse_tool_calls_from_text,
    truncate_for_display,
)

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

# Local models can take minutes on a long prompt
REQUEST_TIMEOUT_SECONDS = 600.0

# Model turns per run; each turn that calls tools starts another
MAX_TOOL_ROUNDS = 50

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"

SYSTEM_PROMPT = """You are an expert software engineer working autonomously in {working_directory}. \
You have tools to read, write and edit files, run bash commands, and search the codebase.

Guidelines:
1. Read a file before editing it.
2. edit_file needs an exact, unique match of old_string.
3. Use bash for tests, builds and git.
4. Use glob to find files and grep to search their contents.
5. Finish one task at a time and verify changes by running tests or builds.
6. Commit successful changes with descriptive messages.

When the task is complete or there is no more work to do, reply with a final summary \
without calling any tools."""


class OllamaError(Exception):
    """Exception raised when the Ollama server rejects a request."""

    pass


class _LineWriter:
    """Accumulates streamed text and hands complete lines to a callback."""

    def __init__(self, emit: Callable[[str], None]):
        self._emit = emit
        self._parts: List[str] = []
        self._pending = ""

    def write(self, text: str) -> None:
        self._parts.append(text)
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._emit(line)

    def write_line(self, text: str) -> None:
        self.flush()
        self.write(text + "\n")

    def flush(self) -> None:
        if self._pending:
            self._emit(self._pending)
            self._parts.append("\n")
            self._pending = ""

    @property
    def text(self) -> str:
        return "".join(self._parts).rstrip("\n")


class OllamaExecutor(BaseExecutor):
    """Runs a chat loop in which the model works the repository through tools.

    Each round streams one assistant turn. Tool calls in that turn are
    executed in the working directory and their results fed back, until the
    model answers without calling a tool.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        on_output: Optional[LineCallback] = None,
        on_error: Optional[LineCallback] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        super().__init__(on_output=on_output, on_error=on_error)
        self.base_url = (base_url or DEFAULT_OLLAMA_BASE_URL).rstrip("/")
        self.model = model or DEFAULT_OLLAMA_MODEL
        self.timeout = timeout
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()
        self._terminated = False

    def run(
        self,
        prompt: str,
        working_directory: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> IterationResult:
        if cancel_event is not None and cancel_event.is_set():
            return IterationResult(success=False, exit_code=-1, stderr="Cancelled before request")

        client = httpx.Client(base_url=self.base_url, timeout=self.timeout)
        with self._lock:
            self._client = client
            self._terminated = False

        tools = WorkspaceTools(working_directory)
        output = _LineWriter(self._emit_output)
        messages: List[dict] = [
            {"role": "system", "content": SYSTEM_PROMPT.format(working_directory=working_directory)},
            {"role": "user", "content": prompt},
        ]

        logger.info(f"Sending prompt to Ollama model {self.model} at {self.base_url}")
        error = None
        try:
            for round_number in range(1, MAX_TOOL_ROUNDS + 1):
                if self._stopped(cancel_event):
                    error = "Request interrupted"
                    break
                text, calls = self._stream_round(client, messages, output, cancel_event)
                output.flush()
                if self._stopped(cancel_event):
                    error = "Request interrupted"
                    break

                if not calls and text:
                    calls = parse_tool_calls_from_text(text)
                assistant: Dict[str, object] = {"role": "assistant", "content": text or None}
                native = [call.to_message() for call in calls if not call.from_text]
                if native:
                    assistant["tool_calls"] = native
                messages.append(assistant)

                if not calls:
                    logger.info(f"Ollama finished after {round_number} round(s)")
                    break
                self._run_tools(calls, tools, messages, output, cancel_event)
            else:
                error = f"Reached maximum tool rounds ({MAX_TOOL_ROUNDS})"
        except (httpx.HTTPError, OllamaError, RuntimeError) as e:
            with self._lock:
                terminated = self._terminated
            error = "Request interrupted" if terminated else f"Ollama request failed: {e}"
        finally:
            output.flush()
            with self._lock:
                self._client = None
            client.close()

        if error is not None:
            logger.error(error)
            self._emit_error(error)
            return IterationResult(success=False, exit_code=1, stdout=output.text, stderr=error)
        return IterationResult(success=True, exit_code=0, stdout=output.text)

    def terminate(self, grace_period: float) -> None:
        # An HTTP stream has no soft interrupt; closing the client aborts it.
        with self._lock:
            client = self._client
            self._terminated = True
        if client is not None:
            logger.info("Closing in-flight Ollama request")
            client.close()

    def _stopped(self, cancel_event: Optional[threading.Event]) -> bool:
        with self._lock:
            if self._terminated:
                return True
        return cancel_event is not None and cancel_event.is_set()

    def _stream_round(
        self,
        client: httpx.Client,
        messages: List[dict],
        output: _LineWriter,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[str, List[ToolCall]]:
        """Stream one assistant turn; returns its text and accumulated tool calls."""
        payload = {
            "model": self.model,
            "messages": messages,
            "tools": TOOL_DEFINITIONS,
            "stream": True,
        }
        text_parts: List[str] = []
        calls: Dict[int, ToolCall] = {}

        with client.stream("POST", CHAT_COMPLETIONS_PATH, json=payload) as response:
            if response.status_code >= 400:
                body = response.read().decode("utf-8", errors="replace")
                raise OllamaError(f"HTTP {response.status_code}: {body[:500]}")

            for line in response.iter_lines():
                if self._stopped(cancel_event):
                    break
                if not line.startswith(SSE_DATA_PREFIX):
                    continue
                data = line[len(SSE_DATA_PREFIX):].strip()
                if data == SSE_DONE:
                    break
                try:
                    chunk = json.loads(data)
                except ValueError:
                    logger.debug(f"Skipping malformed stream chunk: {data[:200]}")
                    continue
                if not isinstance(chunk, dict) or not chunk.get("choices"):
                    continue

                choice = chunk["choices"][0]
                if not isinstance(choice, dict):
                    continue
                delta = choice.get("delta") or {}
                content = delta.get("content")
                if content:
                    text_parts.append(content)
                    output.write(content)
                for fragment in delta.get("tool_calls") or []:
                    if not isinstance(fragment, dict):
                        continue
                    index = fragment.get("index", 0)
                    call = calls.setdefault(index, ToolCall(f"call_{index}", ""))
                    if fragment.get("id"):
                        call.id = fragment["id"]
                    function = fragment.get("function") or {}
                    call.name += function.get("name") or ""
                    call.arguments += function.get("arguments") or ""

        return "".join(text_parts), [calls[index] for index in sorted(calls)]

    def _run_tools(
        self,
        calls: List[ToolCall],
        tools: WorkspaceTools,
        messages: List[dict],
        output: _LineWriter,
        cancel_event: Optional[threading.Event],
    ) -> None:
        text_results = []
        for call in calls:
            if self._stopped(cancel_event):
                return
            logger.info(f"Ollama tool call: {call.name}")
            output.write_line(f"[Tool: {call.name}]")
            result = tools.execute(call.name, call.arguments)
            output.write_line(f"[Result: {truncate_for_display(result)}]")
            if call.from_text:
                text_results.append(f"Tool '{call.name}' result:\n{result}")
            else:
                messages.append({"role": "tool", "content": result, "tool_call_id": call.id})

        # Text-format calls have no ids to answer, so results go back as a user turn
        if text_results:
            joined = "\n\n".join(text_results)
            messages.append(
                {
                    "role": "user",
                    "content": f"Here are the tool results:\n\n{joined}\n\n"
                    "Please continue based on these results.",
                }
            )
