"""Unit tests for OllamaExecutor against a mocked streaming HTTP transport."""

import json
import threading

import httpx
import pytest

from ralph_controller.providers.ollama import CHAT_COMPLETIONS_PATH, OllamaExecutor


@pytest.fixture
def transport(monkeypatch):
    """Route every httpx.Client built by the executor through a MockTransport.

    ``responses`` is consumed in order; the last entry repeats once exhausted.
    """
    state = {"responses": [], "requests": []}
    real_client = httpx.Client

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        responses = state["responses"]
        respond = responses.pop(0) if len(responses) > 1 else responses[0]
        return respond(request)

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("ralph_controller.providers.ollama.httpx.Client", client_factory)
    return state


def sse(*chunks):
    body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks) + "data: [DONE]\n\n"
    return lambda request: httpx.Response(
        200, text=body, headers={"content-type": "text/event-stream"}
    )


def text(content, finish_reason=None):
    return {"choices": [{"index": 0, "delta": {"content": content}, "finish_reason": finish_reason}]}


def tool(index, name="", arguments="", call_id=None):
    fragment = {"index": index, "function": {"name": name, "arguments": arguments}}
    if call_id:
        fragment["id"] = call_id
    return {"choices": [{"index": 0, "delta": {"tool_calls": [fragment]}, "finish_reason": None}]}


def request_body(request):
    return json.loads(request.content)


class TestStreaming:
    def test_streams_lines_as_they_arrive(self, transport, tmp_path):
        transport["responses"] = [sse(text("line "), text("one\nline"), text(" two", "stop"))]
        lines = []
        executor = OllamaExecutor(model="qwen2.5-coder", on_output=lines.append)

        result = executor.run("implement the parser", str(tmp_path))

        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout == "line one\nline two"
        assert lines == ["line one", "line two"]

    def test_request_payload(self, transport, tmp_path):
        transport["responses"] = [sse(text("ok", "stop"))]
        executor = OllamaExecutor(base_url="http://gpu-box:11434/", model="qwen2.5-coder")

        executor.run("implement the parser", str(tmp_path))

        request = transport["requests"][0]
        assert str(request.url) == f"http://gpu-box:11434{CHAT_COMPLETIONS_PATH}"
        body = request_body(request)
        assert body["model"] == "qwen2.5-coder"
        assert body["stream"] is True
        assert {t["function"]["name"] for t in body["tools"]} == {
            "read_file",
            "write_file",
            "edit_file",
            "bash",
            "glob",
            "grep",
            "list_directory",
        }
        assert body["messages"][0]["role"] == "system"
        assert str(tmp_path) in body["messages"][0]["content"]
        assert body["messages"][1] == {"role": "user", "content": "implement the parser"}

    def test_default_model(self):
        assert OllamaExecutor().model == "llama3.1:8b"

    def test_malformed_chunks_are_skipped(self, transport, tmp_path):
        body = 'data: {not json\n\n: keep-alive\n\ndata: {"choices": []}\n\n'
        body += f"data: {json.dumps(text('fine', 'stop'))}\n\ndata: [DONE]\n\n"
        transport["responses"] = [lambda request: httpx.Response(200, text=body)]

        result = OllamaExecutor().run("prompt", str(tmp_path))

        assert result.success is True
        assert result.stdout == "fine"


class TestToolCalls:
    def test_native_tool_call_runs_and_feeds_result_back(self, transport, tmp_path):
        arguments = json.dumps({"file_path": "notes/hello.txt", "content": "hi"})
        transport["responses"] = [
            sse(
                tool(0, name="write_file", call_id="call_abc"),
                tool(0, arguments=arguments[:10]),
                tool(0, arguments=arguments[10:]),
            ),
            sse(text("Wrote the file.", "stop")),
        ]
        lines = []

        result = OllamaExecutor(on_output=lines.append).run("write notes", str(tmp_path))

        assert result.success is True
        assert (tmp_path / "notes" / "hello.txt").read_text() == "hi"
        assert lines == [
            "[Tool: write_file]",
            "[Result: Successfully wrote 2 characters to notes/hello.txt]",
            "Wrote the file.",
        ]

        second = request_body(transport["requests"][1])["messages"]
        assert second[2]["role"] == "assistant"
        assert second[2]["content"] is None
        assert second[2]["tool_calls"][0]["id"] == "call_abc"
        assert second[2]["tool_calls"][0]["function"]["arguments"] == arguments
        assert second[3]["role"] == "tool"
        assert second[3]["tool_call_id"] == "call_abc"
        assert second[3]["content"].startswith("Successfully wrote")

    def test_missing_call_id_defaults_to_index(self, transport, tmp_path):
        transport["responses"] = [
            sse(tool(1, name="list_directory", arguments="{}")),
            sse(text("done", "stop")),
        ]

        OllamaExecutor().run("look around", str(tmp_path))

        second = request_body(transport["requests"][1])["messages"]
        assert second[3]["tool_call_id"] == "call_1"

    def test_tool_calls_written_as_text(self, transport, tmp_path):
        call = (
            "I'll create it.\n<function=write_file>"
            "<parameter=file_path>a.txt</parameter>"
            "<parameter=content>\nalpha\n</parameter></function>"
        )
        transport["responses"] = [sse(text(call)), sse(text("All done.", "stop"))]

        result = OllamaExecutor().run("create a.txt", str(tmp_path))

        assert result.success is True
        assert (tmp_path / "a.txt").read_text() == "alpha"
        second = request_body(transport["requests"][1])["messages"]
        assert "tool_calls" not in second[2]
        assert second[3]["role"] == "user"
        assert second[3]["content"].startswith("Here are the tool results:")
        assert "Tool 'write_file' result:" in second[3]["content"]

    def test_unknown_tool_is_reported_to_model(self, transport, tmp_path):
        transport["responses"] = [
            sse(tool(0, name="deploy", arguments="{}", call_id="c1")),
            sse(text("ok", "stop")),
        ]

        result = OllamaExecutor().run("ship it", str(tmp_path))

        assert result.success is True
        second = request_body(transport["requests"][1])["messages"]
        assert second[3]["content"] == "Unknown tool: deploy"

    def test_long_results_truncated_in_output_only(self, transport, tmp_path):
        (tmp_path / "big.txt").write_text("x" * 5000)
        transport["responses"] = [
            sse(tool(0, name="read_file", arguments='{"file_path": "big.txt"}')),
            sse(text("read", "stop")),
        ]
        lines = []

        OllamaExecutor(on_output=lines.append).run("read it", str(tmp_path))

        assert "... (truncated)]" in lines
        second = request_body(transport["requests"][1])["messages"]
        assert len(second[3]["content"]) > 5000

    def test_stops_after_max_tool_rounds(self, transport, tmp_path, monkeypatch):
        monkeypatch.setattr("ralph_controller.providers.ollama.MAX_TOOL_ROUNDS", 3)
        transport["responses"] = [sse(tool(0, name="list_directory", arguments="{}"))]
        errors = []

        result = OllamaExecutor(on_error=errors.append).run("loop", str(tmp_path))

        assert result.success is False
        assert result.stderr == "Reached maximum tool rounds (3)"
        assert len(transport["requests"]) == 3
        assert errors == [result.stderr]


class TestFailures:
    def test_http_error_is_failed_result(self, transport, tmp_path):
        transport["responses"] = [lambda request: httpx.Response(500, text="model not loaded")]
        errors = []
        executor = OllamaExecutor(on_error=errors.append)

        result = executor.run("prompt", str(tmp_path))

        assert result.success is False
        assert result.exit_code == 1
        assert result.stderr == "Ollama request failed: HTTP 500: model not loaded"
        assert errors == [result.stderr]
        assert len(transport["requests"]) == 1

    def test_connection_error_is_failed_result(self, transport, tmp_path):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport["responses"] = [refuse]

        result = OllamaExecutor().run("prompt", str(tmp_path))

        assert result.success is False
        assert "connection refused" in result.stderr

    def test_cancelled_before_request(self, transport, tmp_path):
        cancel = threading.Event()
        cancel.set()

        result = OllamaExecutor().run("prompt", str(tmp_path), cancel)

        assert result.success is False
        assert transport["requests"] == []

    def test_cancel_mid_stream_skips_tools(self, transport, tmp_path):
        transport["responses"] = [
            sse(
                text("working\n"),
                tool(0, name="write_file", arguments='{"file_path": "x.txt", "content": "x"}'),
            )
        ]
        cancel = threading.Event()

        def on_output(line):
            if line == "working":
                cancel.set()

        result = OllamaExecutor(on_output=on_output).run("prompt", str(tmp_path), cancel)

        assert result.success is False
        assert result.stderr == "Request interrupted"
        assert result.stdout == "working"
        assert not (tmp_path / "x.txt").exists()
        assert len(transport["requests"]) == 1

    def test_terminate_without_request_is_noop(self):
        OllamaExecutor().terminate(1.0)
