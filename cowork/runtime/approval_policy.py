from __future__ import annotations

import json
import os
import shlex
from typing import Any

READ_ONLY_TOOLS = frozenset({"Read", "Glob", "Grep", "WebFetch", "WebSearch"})
TASK_TOOLS = frozenset({"Task", "TaskOutput", "TodoWrite", "TaskStop"})
UI_TOOLS = frozenset({"AskUserQuestion", "EnterPlanMode", "ExitPlanMode", "Skill"})
TEAM_TOOLS = frozenset({"TeamCreate", "TeamDelete", "SendMessage"})

_MCP_READ_MARKERS = (
    "read",
    "list",
    "get",
    "find",
    "search",
    "think",
    "check",
    "initial_instructions",
    "overview",
)

SAFE_BASH_COMMANDS = frozenset(
    {
        "ls",
        "dir",
        "pwd",
        "echo",
        "cat",
        "head",
        "tail",
        "whoami",
        "hostname",
        "date",
        "which",
        "where",
        "type",
        "find",
        "wc",
        "sort",
        "uniq",
        "diff",
        "tree",
    }
)
# Exact read-only git forms; `git branch -D` or `git remote add` must still prompt.
SAFE_GIT_PREFIXES = (
    "git status",
    "git log",
    "git diff",
    "git show",
)
SAFE_GIT_COMMANDS = frozenset({"git branch", "git branch -a", "git branch -v", "git remote", "git remote -v"})

# Chaining, pipes, redirection and substitution can turn any safe command into a write.
_SHELL_META = (";", "&", "|", ">", "<", "`", "$(", "\n", "\r")
_FIND_ACTIONS = frozenset({"-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint", "-fprintf", "-fls"})


def is_auto_approved(tool_name: str, tool_input: Any) -> bool:
    """Tools that never need a human decision (read-only or UI-only)."""

    if tool_name in READ_ONLY_TOOLS or tool_name in TASK_TOOLS:
        return True
    if tool_name in UI_TOOLS or tool_name in TEAM_TOOLS:
        return True
    if tool_name.startswith("mcp__"):
        return any(marker in tool_name for marker in _MCP_READ_MARKERS)
    if tool_name == "Bash":
        command = tool_input.get("command") if isinstance(tool_input, dict) else None
        return is_safe_bash_command(command if isinstance(command, str) else "")
    return False


def is_safe_bash_command(command: str) -> bool:
    trimmed = command.strip()
    if not trimmed:
        return False
    if any(token in trimmed for token in _SHELL_META):
        return False
    words = trimmed.split()
    first = words[0]
    if first == "find":
        return not any(w in _FIND_ACTIONS for w in words[1:])
    if any(w.startswith("--output") or (first == "sort" and w.startswith("-o")) for w in words[1:]):
        return False
    if first in SAFE_BASH_COMMANDS:
        return True
    if first != "git":
        return False
    normalized = " ".join(words)
    if normalized in SAFE_GIT_COMMANDS:
        return True
    return any(normalized == p or normalized.startswith(p + " ") for p in SAFE_GIT_PREFIXES)


def friendly_path(path: str) -> str:
    cleaned = path.strip("\"'")
    home = os.environ.get("HOME")
    if home and cleaned.startswith(home):
        return "~" + cleaned[len(home) :]
    return cleaned


def extract_path_args(command: str) -> list[str]:
    """Positional arguments of a shell command, skipping the command name and flags."""

    try:
        words = shlex.split(command)
    except ValueError:
        words = command.split()
    return [w for w in words[1:] if not w.startswith("-")]


def build_details(tool_name: str, tool_input: Any) -> list[str]:
    args = tool_input if isinstance(tool_input, dict) else {}
    details: list[str] = []

    if tool_name == "Bash":
        command = args.get("command")
        if isinstance(command, str):
            details.extend(_bash_details(command))
        return details

    if tool_name in {"Write", "Edit"}:
        path = args.get("file_path")
        if isinstance(path, str):
            details.append(f"Location: {friendly_path(path)}")
        if tool_name == "Edit":
            old = args.get("old_string")
            if isinstance(old, str):
                details.append(f"Change: {old[:80]}...")
        return details

    if tool_name == "NotebookEdit":
        path = args.get("notebook_path")
        if isinstance(path, str):
            details.append(f"Location: {friendly_path(path)}")
        return details

    try:
        rendered = json.dumps(tool_input, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        rendered = repr(tool_input)
    details.append(rendered[:300])
    return details


def _bash_details(command: str) -> list[str]:
    trimmed = command.strip()
    first = trimmed.split()[0] if trimmed else ""
    args = extract_path_args(trimmed)

    if first == "mkdir" and args:
        return [f"Location: {friendly_path(args[-1])}"]
    if first == "cp" and len(args) >= 2:
        return [f"Copy from: {friendly_path(args[-2])}", f"Copy to: {friendly_path(args[-1])}"]
    if first == "mv" and len(args) >= 2:
        return [f"Move from: {friendly_path(args[-2])}", f"Move to: {friendly_path(args[-1])}"]
    if first == "rm" and args:
        return [f"Delete: {friendly_path(a)}" for a in args]
    return [f"Command: {command}"]
