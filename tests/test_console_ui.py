from __future__ import annotations

import io

from cowork.runtime.protocol import (
    ActivityFinished,
    ActivityStarted,
    ApprovalRequested,
    ApprovalResolved,
    ChatMessage,
    Message,
    RunDone,
    RunError,
    TextDelta,
    TurnCancelled,
)
from cowork.ui.console_ui import ConsoleUI


def _render(*events) -> str:
    stream = io.StringIO()
    ui = ConsoleUI(stream=stream)
    for event in events:
        ui.handle_event(event)
    ui.drain()
    return stream.getvalue()


def _msg(role: str, content: str) -> Message:
    return Message(role=role, content=content, timestamp="t", message_id="m")


def test_streamed_answer_is_not_printed_twice() -> None:
    out = _render(
        _msg("user", "list files"),
        TextDelta(text="Two"),
        TextDelta(text=" files."),
        _msg("assistant", "Two files."),
        RunDone(),
    )

    assert out == "You: list files\nWorking…\nAssistant: Two files.\n"


def test_final_message_differing_from_the_stream_is_shown() -> None:
    out = _render(TextDelta(text="Draft"), _msg("assistant", "Final answer"))

    assert out == "Assistant: Draft\n[revised]\nAssistant: Final answer\n"


class _Terminal(io.StringIO):
    def isatty(self) -> bool:
        return True


def test_final_message_rewrites_the_streamed_line_on_a_terminal() -> None:
    stream = _Terminal()
    ui = ConsoleUI(stream=stream, enable_color=False)
    ui.handle_event(TextDelta(text="Draft"))
    ui.handle_event(_msg("assistant", "Final answer"))
    ui.drain()

    assert stream.getvalue() == "Assistant: Draft\r\x1b[2K\rAssistant: Final answer\n"


def test_multiline_stream_is_marked_revised_on_a_terminal() -> None:
    stream = _Terminal()
    ui = ConsoleUI(stream=stream, enable_color=False)
    ui.handle_event(TextDelta(text="one\ntwo"))
    ui.handle_event(_msg("assistant", "three"))
    ui.drain()

    assert stream.getvalue() == "Assistant: one\ntwo\n[revised]\nAssistant: three\n"


def test_unstreamed_message() -> None:
    assert _render(_msg("assistant", "\n\nHello")) == "Assistant: Hello\n"


def test_activity_lines() -> None:
    out = _render(
        ActivityStarted(activity_id="t1", description="List folder contents"),
        ActivityFinished(activity_id="t1"),
        ActivityStarted(activity_id="t2", description='Write "a.txt"'),
        ActivityFinished(activity_id="t2", status="error"),
    )

    assert out.splitlines() == [
        "[tool] List folder contents …",
        "[tool] List folder contents done",
        '[tool] Write "a.txt" …',
        '[tool] Write "a.txt" failed',
    ]


def test_approval_error_and_cancel_lines() -> None:
    out = _render(
        ApprovalRequested(
            approval_id="t1",
            tool_name="Bash",
            description="Delete files: rm -rf build",
            raw_input='Bash({"command":"rm -rf build"})',
            details=("Delete: build",),
        ),
        ApprovalResolved(approval_id="t1", approved=False, outcome="timed_out"),
        RunError(text="Agent exited with code 3.", code="agent_exit"),
        TurnCancelled(),
    )

    assert out.splitlines() == [
        "[approval] Delete files: rm -rf build",
        "  Delete: build",
        '  (Bash({"command":"rm -rf build"}))',
        "[approval] timed out (denied)",
        "[error] agent_exit: Agent exited with code 3.",
        "[cancel] cancelled",
    ]


def test_notices_and_history() -> None:
    stream = io.StringIO()
    ui = ConsoleUI(stream=stream)

    ui.print_history(
        [
            ChatMessage(id="1", role="user", content="hi", timestamp="t"),
            ChatMessage(id="2", role="assistant", content="hello", timestamp="t"),
        ]
    )
    ui.notice("careful", level="warn")
    ui.notice("broken", level="error")
    ui.drain()

    assert stream.getvalue().splitlines() == ["You: hi", "Assistant: hello", "[warn] careful", "[error] broken"]


def test_threaded_rendering_drains() -> None:
    stream = io.StringIO()
    ui = ConsoleUI(stream=stream)
    ui.start()
    try:
        ui.handle_event(_msg("assistant", "threaded"))
        assert ui.drain(timeout_s=2.0)
    finally:
        ui.stop()

    assert "Assistant: threaded" in stream.getvalue()
