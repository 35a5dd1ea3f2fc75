from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from .protocol import ChatMessage


@dataclass(slots=True)
class SessionState:
    """Committed conversation for one working directory plus the agent's resume id."""

    working_dir: Path
    messages: list[ChatMessage] = field(default_factory=list)
    agent_session_id: str | None = None

    def commit_turn(self, records: Iterable[ChatMessage]) -> None:
        self.messages.extend(records)

    def clear(self) -> None:
        self.messages.clear()
        self.agent_session_id = None

    def snapshot(self) -> "SessionState":
        return SessionState(
            working_dir=self.working_dir,
            messages=list(self.messages),
            agent_session_id=self.agent_session_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "working_dir": str(self.working_dir),
            "agent_session_id": self.agent_session_id,
            "messages": [m.to_dict() for m in self.messages],
        }

    @staticmethod
    def from_dict(raw: dict[str, Any], *, working_dir: Path | None = None) -> "SessionState":
        messages_raw = raw.get("messages")
        messages: list[ChatMessage] = []
        if isinstance(messages_raw, list):
            messages = [ChatMessage.from_dict(m) for m in messages_raw if isinstance(m, dict)]
        session_id = raw.get("agent_session_id")
        return SessionState(
            working_dir=working_dir or Path(str(raw.get("working_dir") or ".")),
            messages=messages,
            agent_session_id=session_id if isinstance(session_id, str) and session_id else None,
        )
