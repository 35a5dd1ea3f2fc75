from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from .config import CoworkConfig

CONFIG_FILENAME = "cowork.json"

_KNOWN_KEYS = {
    "agent_command",
    "agent_args",
    "include_partial_messages",
    "approval_timeout_s",
    "hook_timeout_s",
    "cancel_grace_s",
    "save_debounce_s",
    "data_dir",
    "port_env_var",
}


class ConfigError(ValueError):
    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


def default_data_dir() -> Path:
    override = os.environ.get("COWORK_DATA_DIR")
    if override:
        return Path(os.path.expanduser(override))
    return Path.home() / ".cowork"


def default_config_path(data_dir: Path | None = None) -> Path:
    override = os.environ.get("COWORK_CONFIG_PATH")
    if override:
        return Path(os.path.expanduser(override))
    return (data_dir or default_data_dir()) / "config" / CONFIG_FILENAME


def load_config(path: Path | None = None) -> CoworkConfig:
    """Load the config file if present; a missing file yields defaults."""

    config_path = path or default_config_path()
    if not config_path.exists():
        return CoworkConfig(data_dir=default_data_dir())
    return load_config_file(config_path)


def load_config_file(path: Path) -> CoworkConfig:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}", source=str(path)) from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path} ({e})", source=str(path)) from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file is not valid JSON: {path} ({e})", source=str(path)) from e

    return load_config_dict(data, source=str(path))


def load_config_dict(data: Any, *, source: str) -> CoworkConfig:
    root = _ensure_dict(data, ctx=f"{source}:root", source=source)
    _assert_known_keys(root, allowed=_KNOWN_KEYS, ctx=f"{source}:root", source=source)

    defaults = CoworkConfig(data_dir=default_data_dir())
    kwargs: dict[str, Any] = {}

    agent_command = root.get("agent_command")
    if agent_command is not None:
        kwargs["agent_command"] = _require_str(root, "agent_command", ctx=source, source=source)

    agent_args = root.get("agent_args")
    if agent_args is not None:
        if not isinstance(agent_args, list) or not all(isinstance(a, str) for a in agent_args):
            raise ConfigError(f"{source}.agent_args must be a list of strings", source=source)
        kwargs["agent_args"] = tuple(agent_args)

    partial = _maybe_bool(root.get("include_partial_messages"), ctx=f"{source}.include_partial_messages", source=source)
    if partial is not None:
        kwargs["include_partial_messages"] = partial

    for key in ("approval_timeout_s", "hook_timeout_s", "cancel_grace_s", "save_debounce_s"):
        value = _maybe_float(root.get(key), ctx=f"{source}.{key}", source=source)
        if value is None:
            continue
        if value <= 0:
            raise ConfigError(f"{source}.{key} must be > 0", source=source)
        kwargs[key] = value

    # COWORK_DATA_DIR wins over the file so tests and wrappers can relocate state.
    data_dir = root.get("data_dir")
    if data_dir is not None and not os.environ.get("COWORK_DATA_DIR"):
        kwargs["data_dir"] = Path(os.path.expanduser(_require_str(root, "data_dir", ctx=source, source=source)))

    port_env_var = root.get("port_env_var")
    if port_env_var is not None:
        kwargs["port_env_var"] = _require_str(root, "port_env_var", ctx=source, source=source)

    merged = {**defaults.to_dict(), **kwargs}
    merged["agent_args"] = tuple(merged["agent_args"])
    merged["data_dir"] = Path(merged["data_dir"])
    config = CoworkConfig(**merged)

    if config.approval_timeout_s >= config.hook_timeout_s:
        raise ConfigError(
            f"{source}: approval_timeout_s ({config.approval_timeout_s}) must be less than "
            f"hook_timeout_s ({config.hook_timeout_s})",
            source=source,
        )
    return config


def save_config_file(path: Path, config: CoworkConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def _ensure_dict(value: Any, *, ctx: str, source: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{ctx} must be an object", source=source)
    return value


def _require_str(obj: dict[str, Any], key: str, *, ctx: str, source: str) -> str:
    val = obj.get(key)
    if not isinstance(val, str) or not val.strip():
        raise ConfigError(f"{ctx}.{key} must be a non-empty string", source=source)
    return val


def _maybe_bool(value: Any, *, ctx: str, source: str) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{ctx} must be a boolean or null", source=source)


def _maybe_float(value: Any, *, ctx: str, source: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{ctx} must be a number or null", source=source)
    if isinstance(value, (int, float)):
        return float(value)
    raise ConfigError(f"{ctx} must be a number or null", source=source)


def _assert_known_keys(obj: dict[str, Any], *, allowed: set[str], ctx: str, source: str) -> None:
    unknown = set(obj.keys()) - allowed
    if unknown:
        rendered = ", ".join(sorted(unknown))
        raise ConfigError(f"{ctx} contains unknown keys: {rendered}", source=source)
