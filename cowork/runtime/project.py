from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class RuntimePaths:
    data_dir: Path
    config_dir: Path
    sessions_dir: Path
    state_dir: Path
    hooks_dir: Path
    logs_dir: Path

    @staticmethod
    def for_data_dir(data_dir: Path) -> "RuntimePaths":
        data_dir = data_dir.expanduser().resolve()
        return RuntimePaths(
            data_dir=data_dir,
            config_dir=data_dir / "config",
            sessions_dir=data_dir / "sessions",
            state_dir=data_dir / "state",
            hooks_dir=data_dir / "hooks",
            logs_dir=data_dir / "logs",
        )

    @property
    def hook_settings_path(self) -> Path:
        return self.hooks_dir / "settings.json"

    def ensure(self) -> "RuntimePaths":
        for directory in (self.config_dir, self.sessions_dir, self.state_dir, self.hooks_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)
        return self
