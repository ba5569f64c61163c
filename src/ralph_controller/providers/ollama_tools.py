"""Workspace tools offered to Ollama models through function calling."""

import json
import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

BASH_TIMEOUT_SECONDS = 120
GREP_TIMEOUT_SECONDS = 30

MAX_GLOB_RESULTS = 100
MAX_GREP_LINES = 50

# Tool results echoed to the output stream are cut to this many characters
MAX_DISPLAYED_RESULT = 1000

# Models without native tool calling sometimes write the call out as text
TEXT_FUNCTION_PATTERN = re.compile(r"<function=(\w+)>(.*?)</function>", re.DOTALL)
TEXT_PARAMETER_PATTERN = re.compile(r"<parameter=(\w+)>\s*(.*?)\s*</parameter>", re.DOTALL)

# Directories skipped by glob and grep
IGNORED_DIRECTORIES = {".git", "node_modules", "__pycache__", ".venv"}


def _function(name: str, description: str, properties: Dict[str, str], required: List[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {
                    key: {"type": "string", "description": text} for key, text in properties.items()
                },
                "required": required,
            },
        },
    }


TOOL_DEFINITIONS = [
    _function(
        "read_file",
        "Read the contents of a file. Returns the file content with line numbers.",
        {"file_path": "Path to the file, absolute or relative to the working directory"},
        ["file_path"],
    ),
    _function(
        "write_file",
        "Write content to a file, creating it and any parent directories if needed.",
        {"file_path": "Path to the file", "content": "The full content to write"},
        ["file_path", "content"],
    ),
    _function(
        "edit_file",
        "Replace one exact occurrence of old_string with new_string in a file.",
        {
            "file_path": "Path to the file",
            "old_string": "Exact text to replace; must appear exactly once",
            "new_string": "Replacement text",
        },
        ["file_path", "old_string", "new_string"],
    ),
    _function(
        "bash",
        "Run a bash command in the working directory and return its output.",
        {"command": "The command to run"},
        ["command"],
    ),
    _function(
        "glob",
        "Find files matching a glob pattern such as **/*.py.",
        {"pattern": "Glob pattern", "path": "Directory to search (default: working directory)"},
        ["pattern"],
    ),
    _function(
        "grep",
        "Search file contents for a regular expression.",
        {
            "pattern": "Regular expression",
            "path": "File or directory to search (default: working directory)",
        },
        ["pattern"],
    ),
    _function(
        "list_directory",
        "List the files and directories in a directory.",
        {"path": "Directory to list (default: working directory)"},
        [],
    ),
]


class ToolCall:
    """One requested tool invocation; ``arguments`` is the raw JSON text."""

    def __init__(self, call_id: str, name: str, arguments: str = "", from_text: bool = False):
        self.id = call_id
        self.name = name
        self.arguments = arguments
        self.from_text = from_text

    def to_message(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


def parse_tool_calls_from_text(text: str) -> List[ToolCall]:
    """Extract ``<function=name><parameter=key>value</parameter></function>`` calls."""
    calls = []
    for number, match in enumerate(TEXT_FUNCTION_PATTERN.finditer(text)):
        arguments = {key: value for key, value in TEXT_PARAMETER_PATTERN.findall(match.group(2))}
        calls.append(
            ToolCall(f"text_call_{number}", match.group(1), json.dumps(arguments), from_text=True)
        )
    return calls


def truncate_for_display(result: str) -> str:
    if len(result) <= MAX_DISPLAYED_RESULT:
        return result
    return result[:MAX_DISPLAYED_RESULT] + "\n... (truncated)"


class WorkspaceTools:
    """Executes tool calls against one working directory.

    Every tool returns text for the model; failures are reported in that text
    rather than raised so the conversation can continue.
    """

    def __init__(self, working_directory: str):
        self.root = Path(working_directory)

    def execute(self, name: str, arguments: str) -> str:
        handler = getattr(self, f"_tool_{name}", None)
        if handler is None:
            return f"Unknown tool: {name}"
        try:
            args = json.loads(arguments) if arguments.strip() else {}
            if not isinstance(args, dict):
                raise ValueError("arguments must be a JSON object")
            return handler(**args)
        except (OSError, ValueError, TypeError, NotImplementedError, re.error) as e:
            logger.debug(f"Tool {name} failed: {e}")
            return f"Error executing {name}: {e}"

    def _resolve(self, path: Optional[str]) -> Path:
        if not path:
            return self.root
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.root / candidate

    def _tool_read_file(self, file_path: str) -> str:
        path = self._resolve(file_path)
        if not path.is_file():
            return f"Error: File not found: {file_path}"
        lines = path.read_text(encoding="utf-8").split("\n")
        return "\n".join(f"{number:5}| {line}" for number, line in enumerate(lines, start=1))

    def _tool_write_file(self, file_path: str, content: str) -> str:
        path = self._resolve(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return f"Successfully wrote {len(content)} characters to {file_path}"

    def _tool_edit_file(self, file_path: str, old_string: str, new_string: str) -> str:
        path = self._resolve(file_path)
        if not path.is_file():
            return f"Error: File not found: {file_path}"
        text = path.read_text(encoding="utf-8")
        count = text.count(old_string) if old_string else 0
        if count == 0:
            return f"Error: old_string not found in {file_path}"
        if count > 1:
            return (
                f"Error: old_string appears {count} times in file. "
                "Please provide more context to make it unique."
            )
        path.write_text(text.replace(old_string, new_string, 1), encoding="utf-8")
        return f"Successfully replaced text in {file_path}"

    def _tool_bash(self, command: str) -> str:
        process = subprocess.Popen(
            ["bash", "-c", command] if os.name != "nt" else ["cmd", "/c", command],
            cwd=self.root,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=os.name != "nt",
        )
        try:
            stdout, stderr = process.communicate(timeout=BASH_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            _kill_tree(process)
            process.communicate()
            return "Error: Command timed out after 2 minutes"

        sections = []
        if stdout:
            sections.append(f"STDOUT:\n{stdout}")
        if stderr:
            sections.append(f"STDERR:\n{stderr}")
        sections.append(f"Exit code: {process.returncode}")
        return "\n".join(sections)

    def _tool_glob(self, pattern: str, path: Optional[str] = None) -> str:
        base = self._resolve(path)
        matches = sorted(
            str(match.relative_to(base))
            for match in base.glob(pattern)
            if match.is_file() and not _is_ignored(match.relative_to(base))
        )
        if not matches:
            return f"No files found matching pattern '{pattern}' in {path or self.root}"
        return "\n".join(matches[:MAX_GLOB_RESULTS])

    def _tool_grep(self, pattern: str, path: Optional[str] = None) -> str:
        regex = re.compile(pattern)
        base = self._resolve(path)
        files = [base] if base.is_file() else sorted(_walk_files(base))
        results: List[str] = []
        truncated = False
        deadline = time.monotonic() + GREP_TIMEOUT_SECONDS
        for file in files:
            if time.monotonic() > deadline:
                truncated = True
                break
            try:
                text = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            display = file.relative_to(self.root) if file.is_relative_to(self.root) else file
            for number, line in enumerate(text.split("\n"), start=1):
                if regex.search(line):
                    if len(results) == MAX_GREP_LINES:
                        truncated = True
                        break
                    results.append(f"{display}:{number}:{line}")
            if truncated:
                break

        if not results:
            return f"No matches found for pattern '{pattern}'"
        output = "\n".join(results)
        if truncated:
            output += "\n... (truncated, more results available)"
        return output

    def _tool_list_directory(self, path: Optional[str] = None) -> str:
        directory = self._resolve(path)
        if not directory.is_dir():
            return f"Error: Directory not found: {path or self.root}"
        entries = sorted(directory.iterdir(), key=lambda entry: (not entry.is_dir(), entry.name))
        if not entries:
            return "(empty directory)"
        return "\n".join(
            f"[DIR]  {entry.name}" if entry.is_dir() else f"[FILE] {entry.name}" for entry in entries
        )


def _is_ignored(relative: Path) -> bool:
    return any(part in IGNORED_DIRECTORIES for part in relative.parts)


def _walk_files(base: Path):
    for directory, subdirectories, files in os.walk(base):
        subdirectories[:] = sorted(d for d in subdirectories if d not in IGNORED_DIRECTORIES)
        for file in sorted(files):
            yield Path(directory) / file


def _kill_tree(process: subprocess.Popen) -> None:
    try:
        if os.name == "nt":
            process.kill()
        else:
            os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass

