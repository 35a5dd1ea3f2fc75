from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from .error_codes import ErrorCode
from .ids import new_id, now_iso
from .protocol import (
    ActivityFinished,
    ActivityStarted,
    ActivityStatus,
    ChatMessage,
    Message,
    MessageRole,
    RunDone,
    RunError,
    SessionBound,
    StreamEvent,
    TextDelta,
)
from .tool_summary import describe_tool

LOGGER = logging.getLogger(__name__)


def coalesce(history: Sequence[ChatMessage], incoming: Message) -> list[ChatMessage]:
    """
    Fold `incoming` into `history`, masking the agent's duplicate final message.

    Two keys decide: role (both assistant) and adjacency (the decoder flagged
    `incoming.coalesce` because nothing but text deltas came between the two).
    When both hold the last record is replaced, otherwise `incoming` is appended.
    """

    out = list(history)
    record = incoming.to_record()
    if (
        incoming.coalesce
        and incoming.role == MessageRole.ASSISTANT.value
        and out
        and out[-1].role == MessageRole.ASSISTANT.value
    ):
        out[-1] = record
        return out
    out.append(record)
    return out


class StreamingBuffer:
    """Live text accumulated from deltas; emptied when a Message or RunDone lands."""

    __slots__ = ("_parts",)

    def __init__(self) -> None:
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def append(self, delta: str) -> str:
        if delta:
            self._parts.append(delta)
        return self.text

    def reset(self) -> None:
        self._parts.clear()

    def __bool__(self) -> bool:
        return bool(self._parts)


class StreamDecoder:
    """
    Classify the agent's line-delimited JSON output into StreamEvents.

    One decoder per run. The only cross-line state is what coalescing needs: whether
    the last emitted non-delta event was an assistant Message, and that message's
    text (so a `result` repeating it is not emitted twice).
    """

    def __init__(self) -> None:
        self._after_assistant_message = False
        self._last_assistant_text: str | None = None
        self._saw_terminal = False

    @property
    def saw_terminal(self) -> bool:
        return self._saw_terminal

    def decode(self, line: str) -> list[StreamEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            LOGGER.debug("Dropping non-JSON agent output: %s", line[:200])
            return []
        if not isinstance(msg, dict):
            LOGGER.debug("Dropping non-object agent output: %s", line[:200])
            return []

        msg_type = msg.get("type")
        if msg_type == "system":
            return self._decode_system(msg)
        if msg_type == "stream_event":
            return self._decode_stream_event(msg)
        if msg_type == "assistant":
            return self._decode_assistant(msg)
        if msg_type == "user":
            return self._decode_user(msg)
        if msg_type == "result":
            return self._decode_result(msg)

        LOGGER.debug("Ignoring agent line of type %r", msg_type)
        return []

    def _decode_system(self, msg: dict[str, Any]) -> list[StreamEvent]:
        session_id = msg.get("session_id")
        if isinstance(session_id, str) and session_id:
            return [SessionBound(session_id=session_id)]
        return []

    def _decode_stream_event(self, msg: dict[str, Any]) -> list[StreamEvent]:
        event = msg.get("event")
        if not isinstance(event, dict):
            return []
        delta = event.get("delta")
        if not isinstance(delta, dict):
            return []
        text = delta.get("text")
        if isinstance(text, str) and text:
            return [TextDelta(text=text)]
        return []

    def _decode_assistant(self, msg: dict[str, Any]) -> list[StreamEvent]:
        message = msg.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return []

        out: list[StreamEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    out.append(self._assistant_message(text))
            elif block_type == "tool_use":
                tool_id = block.get("id")
                name = block.get("name")
                if not isinstance(tool_id, str) or not isinstance(name, str):
                    continue
                described = describe_tool(name, block.get("input"))
                out.append(
                    ActivityStarted(
                        activity_id=tool_id,
                        description=described.description,
                        raw_command=described.raw,
                    )
                )
                self._after_assistant_message = False
        return out

    def _decode_user(self, msg: dict[str, Any]) -> list[StreamEvent]:
        message = msg.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return []

        out: list[StreamEvent] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            tool_use_id = item.get("tool_use_id")
            if not isinstance(tool_use_id, str) or not tool_use_id:
                continue
            status = ActivityStatus.ERROR if item.get("is_error") is True else ActivityStatus.DONE
            out.append(ActivityFinished(activity_id=tool_use_id, status=status.value))
        if out:
            self._after_assistant_message = False
        return out

    def _decode_result(self, msg: dict[str, Any]) -> list[StreamEvent]:
        self._saw_terminal = True
        result = msg.get("result")
        text = result if isinstance(result, str) else ""

        if msg.get("is_error") is True or (
            isinstance(msg.get("subtype"), str) and str(msg.get("subtype")).startswith("error")
        ):
            self._after_assistant_message = False
            detail = text or str(msg.get("subtype") or "Agent reported an error.")
            return [RunError(text=detail, code=ErrorCode.RUN_ERROR.value)]

        out: list[StreamEvent] = []
        if text and text != self._last_assistant_text:
            out.append(self._assistant_message(text))
        out.append(RunDone(success=True))
        self._after_assistant_message = False
        return out

    def _assistant_message(self, text: str) -> Message:
        event = Message(
            role=MessageRole.ASSISTANT.value,
            content=text,
            timestamp=now_iso(),
            message_id=new_id("msg"),
            coalesce=self._after_assistant_message,
        )
        self._after_assistant_message = True
        self._last_assistant_text = text
        return event
