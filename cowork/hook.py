from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Mapping

import httpx

from .runtime.config import CoworkConfig
from .runtime.config_io import ConfigError, load_config

LOGGER = logging.getLogger("cowork.hook")

HOOK_EVENT_NAME = "PreToolUse"
DENY_REASON = "The user declined this action."
DEFAULT_HOOK_COMMAND = "cowork-hook"


def decision_output(approved: bool, *, reason: str | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "hookEventName": HOOK_EVENT_NAME,
        "permissionDecision": "allow" if approved else "deny",
    }
    if not approved:
        out["permissionDecisionReason"] = reason or DENY_REASON
    return {"hookSpecificOutput": out}


def request_decision(
    body: str,
    *,
    port: int,
    timeout_s: float,
    transport: httpx.BaseTransport | None = None,
) -> bool | None:
    """
    Ask the approval server about one tool call.

    Returns the decision, or None when no decision could be obtained. None means
    the caller lets the tool run: the hook fails open.
    """

    url = f"http://127.0.0.1:{port}/approval"
    try:
        with httpx.Client(timeout=timeout_s, transport=transport) as client:
            resp = client.post(url, content=body.encode("utf-8"), headers={"content-type": "application/json"})
            resp.raise_for_status()
            data = resp.json()
    except httpx.TimeoutException as e:
        LOGGER.warning("cowork-hook: approval server timed out (%s); allowing", e)
        return None
    except httpx.HTTPStatusError as e:
        LOGGER.warning("cowork-hook: approval server returned HTTP %s; allowing", e.response.status_code)
        return None
    except httpx.HTTPError as e:
        LOGGER.warning("cowork-hook: connection error (%s); allowing", e)
        return None
    except ValueError as e:
        LOGGER.warning("cowork-hook: undecodable reply (%s); allowing", e)
        return None

    if not isinstance(data, dict):
        LOGGER.warning("cowork-hook: reply is not an object; allowing")
        return None
    return data.get("approved") is True


def run_hook(
    stdin_text: str,
    env: Mapping[str, str],
    *,
    config: CoworkConfig,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any] | None:
    """Return the hook's stdout document, or None to exit silently (allow)."""

    port_raw = env.get(config.port_env_var)
    if not port_raw:
        LOGGER.warning("cowork-hook: %s not set; allowing", config.port_env_var)
        return None
    try:
        port = int(port_raw)
    except ValueError:
        LOGGER.warning("cowork-hook: invalid port %r; allowing", port_raw)
        return None

    decision = request_decision(stdin_text, port=port, timeout_s=config.hook_timeout_s, transport=transport)
    if decision is None:
        return None
    return decision_output(decision)


def install_hook_settings(path: Path, command: str = DEFAULT_HOOK_COMMAND, *, timeout_s: float = 130.0) -> Path:
    """
    Register `command` as the agent's PreToolUse hook in the settings file at `path`.

    Existing settings are preserved; an earlier entry for the same command is replaced.
    """

    settings: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Hook settings file is not valid JSON: {path} ({e})") from e
        if not isinstance(loaded, dict):
            raise ValueError(f"Hook settings file must contain an object: {path}")
        settings = loaded

    hooks = settings.get("hooks")
    if not isinstance(hooks, dict):
        hooks = {}
    entries = hooks.get(HOOK_EVENT_NAME)
    if not isinstance(entries, list):
        entries = []

    kept = [entry for entry in entries if not _entry_runs(entry, command)]
    kept.append(
        {
            "matcher": "*",
            "hooks": [{"type": "command", "command": command, "timeout": int(timeout_s) + 5}],
        }
    )
    hooks[HOOK_EVENT_NAME] = kept
    settings["hooks"] = hooks

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    return path


def _entry_runs(entry: Any, command: str) -> bool:
    if not isinstance(entry, dict):
        return False
    inner = entry.get("hooks")
    if not isinstance(inner, list):
        return False
    return any(isinstance(h, dict) and h.get("command") == command for h in inner)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr, format="%(message)s")
    try:
        config = load_config()
    except ConfigError as e:
        LOGGER.warning("cowork-hook: %s; using defaults", e)
        config = CoworkConfig()

    output = run_hook(sys.stdin.read(), os.environ, config=config)
    if output is not None:
        sys.stdout.write(json.dumps(output, ensure_ascii=False))
        sys.stdout.flush()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
