from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_AGENT_ARGS: tuple[str, ...] = ("-p", "--output-format", "stream-json", "--verbose")


@dataclass(frozen=True, slots=True)
class CoworkConfig:
    """
    Runtime settings for one cowork installation.

    `approval_timeout_s` must stay below `hook_timeout_s`: the registry answers a
    stale request with an explicit denial before the hook's HTTP call gives up.
    """

    agent_command: str = "claude"
    agent_args: tuple[str, ...] = DEFAULT_AGENT_ARGS
    include_partial_messages: bool = True
    approval_timeout_s: float = 120.0
    hook_timeout_s: float = 130.0
    cancel_grace_s: float = 3.0
    save_debounce_s: float = 0.5
    data_dir: Path = field(default_factory=lambda: Path.home() / ".cowork")
    port_env_var: str = "COWORK_APPROVAL_PORT"

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_command": self.agent_command,
            "agent_args": list(self.agent_args),
            "include_partial_messages": self.include_partial_messages,
            "approval_timeout_s": self.approval_timeout_s,
            "hook_timeout_s": self.hook_timeout_s,
            "cancel_grace_s": self.cancel_grace_s,
            "save_debounce_s": self.save_debounce_s,
            "data_dir": str(self.data_dir),
            "port_env_var": self.port_env_var,
        }
