from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class EventKind(str, Enum):
    TEXT_DELTA = "text_delta"
    MESSAGE = "message"

    ACTIVITY_STARTED = "activity_started"
    ACTIVITY_FINISHED = "activity_finished"

    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"

    SESSION_BOUND = "session_bound"

    RUN_DONE = "run_done"
    RUN_ERROR = "run_error"
    TURN_CANCELLED = "turn_cancelled"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ActivityStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.TEXT_DELTA.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text, "turn_id": self.turn_id}


@dataclass(frozen=True, slots=True)
class Message:
    role: str
    content: str
    timestamp: str
    message_id: str
    # Set by the decoder when this message directly follows another assistant message.
    coalesce: bool = False
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.MESSAGE.value

    def to_record(self) -> "ChatMessage":
        return ChatMessage(id=self.message_id, role=self.role, content=self.content, timestamp=self.timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.message_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "coalesce": self.coalesce,
            "turn_id": self.turn_id,
        }


@dataclass(frozen=True, slots=True)
class ActivityStarted:
    activity_id: str
    description: str
    raw_command: str | None = None
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.ACTIVITY_STARTED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.activity_id,
            "description": self.description,
            "raw_command": self.raw_command,
            "turn_id": self.turn_id,
        }


@dataclass(frozen=True, slots=True)
class ActivityFinished:
    activity_id: str
    status: str = ActivityStatus.DONE.value
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.ACTIVITY_FINISHED.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "id": self.activity_id, "status": self.status, "turn_id": self.turn_id}


@dataclass(frozen=True, slots=True)
class ApprovalRequested:
    approval_id: str
    tool_name: str
    description: str
    raw_input: str
    details: tuple[str, ...] = ()
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.APPROVAL_REQUESTED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.approval_id,
            "tool_name": self.tool_name,
            "description": self.description,
            "raw_input": self.raw_input,
            "details": list(self.details),
            "turn_id": self.turn_id,
        }


@dataclass(frozen=True, slots=True)
class ApprovalResolved:
    approval_id: str
    approved: bool
    outcome: str
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.APPROVAL_RESOLVED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.approval_id,
            "approved": self.approved,
            "outcome": self.outcome,
            "turn_id": self.turn_id,
        }


@dataclass(frozen=True, slots=True)
class SessionBound:
    session_id: str
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.SESSION_BOUND.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "session_id": self.session_id, "turn_id": self.turn_id}


@dataclass(frozen=True, slots=True)
class RunDone:
    success: bool = True
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.RUN_DONE.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "success": self.success, "turn_id": self.turn_id}


@dataclass(frozen=True, slots=True)
class RunError:
    text: str
    code: str = "run_error"
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.RUN_ERROR.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text, "code": self.code, "turn_id": self.turn_id}


@dataclass(frozen=True, slots=True)
class TurnCancelled:
    turn_id: str | None = None

    @property
    def kind(self) -> str:
        return EventKind.TURN_CANCELLED.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "turn_id": self.turn_id}


StreamEvent = Union[
    TextDelta,
    Message,
    ActivityStarted,
    ActivityFinished,
    ApprovalRequested,
    ApprovalResolved,
    SessionBound,
    RunDone,
    RunError,
    TurnCancelled,
]

TERMINAL_KINDS = frozenset({EventKind.RUN_DONE.value, EventKind.RUN_ERROR.value})


def is_terminal(event: StreamEvent) -> bool:
    return event.kind in TERMINAL_KINDS


@dataclass(frozen=True, slots=True)
class ChatMessage:
    id: str
    role: str
    content: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "ChatMessage":
        return ChatMessage(
            id=str(raw["id"]),
            role=str(raw["role"]),
            content=str(raw.get("content") or ""),
            timestamp=str(raw.get("timestamp") or ""),
        )
