from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from ..session import SessionState


class SessionStore(ABC):
    @abstractmethod
    def load(self, working_dir: Path) -> SessionState: ...

    @abstractmethod
    def save(self, state: SessionState) -> None: ...

    @abstractmethod
    def delete(self, working_dir: Path) -> None: ...

    @abstractmethod
    def last_working_dir(self) -> Path | None: ...

    @abstractmethod
    def set_last_working_dir(self, path: Path) -> None: ...
