from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class ToolDescription:
    description: str
    raw: str


def _truncate(s: str, max_len: int) -> str:
    if len(s) <= max_len:
        return s
    return s[: max_len - 1] + "…"


def _q(s: str) -> str:
    # Quote without backticks so terminals that don't render markdown still look OK.
    return f'"{s}"'


def _str_arg(arguments: dict[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _filename(path: str) -> str:
    name = os.path.basename(path.rstrip("/\\"))
    return name or path


def _raw_invocation(tool_name: str, arguments: Any) -> str:
    try:
        rendered = json.dumps(arguments, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        rendered = repr(arguments)
    return f"{tool_name}({rendered})"


def describe_tool(tool_name: str, arguments: Any) -> ToolDescription:
    """Summarize an agent tool invocation for activity lists and approval dialogs."""

    args = arguments if isinstance(arguments, dict) else {}
    return ToolDescription(description=_describe(tool_name, args), raw=_raw_invocation(tool_name, arguments))


def _describe(tool_name: str, arguments: dict[str, Any]) -> str:
    if tool_name == "Bash":
        return _describe_bash(_str_arg(arguments, "command") or "")

    if tool_name == "Read":
        path = _str_arg(arguments, "file_path")
        return f"Read {_q(_filename(path))}" if path else "Read file"

    if tool_name == "Write":
        path = _str_arg(arguments, "file_path")
        return f"Write {_q(_filename(path))}" if path else "Write file"

    if tool_name == "Edit":
        path = _str_arg(arguments, "file_path")
        return f"Edit {_q(_filename(path))}" if path else "Edit file"

    if tool_name == "NotebookEdit":
        path = _str_arg(arguments, "notebook_path")
        return f"Edit notebook {_q(_filename(path))}" if path else "Edit notebook"

    if tool_name == "Glob":
        pattern = _str_arg(arguments, "pattern") or "*"
        return f"Find files {_q(pattern)}"

    if tool_name == "Grep":
        pattern = _str_arg(arguments, "pattern")
        return f"Search {_q(_truncate(pattern, 40))}" if pattern else "Search text"

    if tool_name == "WebFetch":
        url = _str_arg(arguments, "url")
        return f"Fetch {_q(_truncate(url, 50))}" if url else "Fetch URL"

    if tool_name == "WebSearch":
        query = _str_arg(arguments, "query")
        return f"Search web {_q(_truncate(query, 40))}" if query else "Search web"

    if tool_name == "Task":
        desc = _str_arg(arguments, "description") or "task"
        return f"Run subtask: {_truncate(desc, 50)}"

    if tool_name == "TodoWrite":
        return "Update todo list"

    return f"Run tool {_q(tool_name)}"


def _describe_bash(command: str) -> str:
    cmd = " ".join(command.strip().splitlines()).strip()
    if not cmd:
        return "Run shell command"

    first = cmd.split()[0]
    if first == "mv":
        return f"Move files: {_truncate(cmd, 60)}"
    if first == "cp":
        return f"Copy files: {_truncate(cmd, 60)}"
    if first == "mkdir":
        return f"Create folder: {_truncate(cmd, 60)}"
    if first == "rm":
        return f"Delete files: {_truncate(cmd, 60)}"
    if first == "git":
        return f"Git: {_truncate(cmd[4:].strip(), 56)}"
    if first in {"curl", "wget"}:
        return "Connect to an external service"
    if first in {"ls", "tree"}:
        return "List folder contents"
    if first.startswith("python") or first.startswith("pip"):
        return f"Run Python: {_truncate(cmd, 60)}"
    return f"Run $ {_truncate(cmd, 60)}"
