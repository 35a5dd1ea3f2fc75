from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

import httpx
import pytest
from conftest import FakeAgent, Recorder, wait_until

from cowork.runtime.config import CoworkConfig
from cowork.runtime.error_codes import ErrorCode
from cowork.runtime.event_bus import EventBus
from cowork.runtime.ids import new_id, now_iso
from cowork.runtime.orchestrator import Orchestrator, TurnRejected, TurnState, TurnTerminal
from cowork.runtime.process_runner import SpawnError
from cowork.runtime.protocol import Message, MessageRole, RunDone, RunError, SessionBound, TextDelta
from cowork.runtime.stores import FileSessionStore


class FakeHandle:
    def __init__(self, on_event) -> None:
        self.run_id = new_id("run")
        self.cancelled = False
        self._on_event = on_event

    def emit(self, event) -> None:
        self._on_event(self, event)


class FakeRunner:
    """Stands in for ProcessRunner; tests drive the stream through `emit`."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.starts: list[dict[str, Any]] = []
        self.handles: list[FakeHandle] = []

    def start(self, instruction, working_dir, env, *, on_event, on_exit=None, on_stderr=None, **kwargs) -> FakeHandle:
        if self.fail:
            raise SpawnError("agent binary not found")
        self.starts.append({"instruction": instruction, "working_dir": working_dir, "env": env, **kwargs})
        handle = FakeHandle(on_event)
        self.handles.append(handle)
        return handle

    def cancel(self, handle: FakeHandle) -> bool:
        if handle.cancelled:
            return False
        handle.cancelled = True
        return True

    def emit(self, event) -> None:
        self.handles[-1].emit(event)


def _assistant(text: str, *, coalesce: bool = False) -> Message:
    return Message(
        role=MessageRole.ASSISTANT.value,
        content=text,
        timestamp=now_iso(),
        message_id=new_id("msg"),
        coalesce=coalesce,
    )


@pytest.fixture
def config(tmp_path: Path) -> CoworkConfig:
    return CoworkConfig(
        data_dir=tmp_path / "data",
        save_debounce_s=0.01,
        approval_timeout_s=5.0,
        hook_timeout_s=6.0,
    )


@pytest.fixture
def store(tmp_path: Path) -> FileSessionStore:
    return FileSessionStore(tmp_path / "data" / "sessions", state_dir=tmp_path / "data" / "state")


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def orch(config: CoworkConfig, event_bus: EventBus, store: FileSessionStore, runner: FakeRunner, workdir: Path):
    o = Orchestrator(config, event_bus=event_bus, session_store=store, runner=runner)
    o.set_working_dir(workdir)
    yield o
    o.close()


def _ask_approval(o: Orchestrator, payload: dict) -> tuple[threading.Thread, dict]:
    box: dict = {}

    def _run() -> None:
        box["response"] = httpx.post(f"http://127.0.0.1:{o.approval_port}/approval", json=payload, timeout=10.0)

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    return t, box


def test_streamed_answer_commits_user_and_one_assistant_record(
    orch: Orchestrator, runner: FakeRunner, recorder: Recorder
) -> None:
    turn = orch.send_message("  list files  ")
    assert orch.state is TurnState.RUNNING
    assert runner.starts[0]["instruction"] == "list files"
    assert runner.starts[0]["env"] == {"COWORK_APPROVAL_PORT": str(orch.approval_port)}

    runner.emit(SessionBound(session_id="sess-1"))
    runner.emit(TextDelta(text="Two"))
    runner.emit(TextDelta(text=" files."))
    assert orch.streaming_text == "Two files."

    runner.emit(_assistant("Two files."))
    assert orch.streaming_text == ""
    runner.emit(_assistant("Two files.", coalesce=True))
    runner.emit(RunDone())

    assert orch.state is TurnState.IDLE
    assert [(m.role, m.content) for m in orch.messages] == [("user", "list files"), ("assistant", "Two files.")]
    assert orch.agent_session_id == "sess-1"
    assert orch.last_turn is turn
    assert turn.terminal_state is TurnTerminal.COMPLETED
    assert recorder.kinds() == [
        "message",
        "session_bound",
        "text_delta",
        "text_delta",
        "message",
        "message",
        "run_done",
    ]
    assert {e.turn_id for e in recorder.events} == {turn.turn_id}


def test_tool_activity_keeps_both_assistant_messages(orch: Orchestrator, runner: FakeRunner) -> None:
    orch.send_message("fix it")
    runner.emit(_assistant("Let me look."))
    runner.emit(_assistant("Fixed.", coalesce=False))
    runner.emit(RunDone())

    assert [m.content for m in orch.messages] == ["fix it", "Let me look.", "Fixed."]


def test_second_message_while_running_is_rejected(orch: Orchestrator, runner: FakeRunner, workdir: Path) -> None:
    orch.send_message("first")

    with pytest.raises(TurnRejected) as exc_info:
        orch.send_message("second")
    assert exc_info.value.code is ErrorCode.BUSY

    for action in (lambda: orch.set_working_dir(workdir), orch.clear_history, orch.reset_session):
        with pytest.raises(TurnRejected):
            action()
    assert len(runner.starts) == 1


def test_empty_message_and_missing_working_dir(
    config: CoworkConfig, event_bus: EventBus, store: FileSessionStore, runner: FakeRunner, tmp_path: Path
) -> None:
    o = Orchestrator(config, event_bus=event_bus, session_store=store, runner=runner)
    try:
        with pytest.raises(TurnRejected) as empty:
            o.send_message("   ")
        assert empty.value.code is ErrorCode.BAD_REQUEST

        with pytest.raises(TurnRejected) as no_dir:
            o.send_message("hello")
        assert no_dir.value.code is ErrorCode.NO_WORKING_DIR

        not_a_dir = tmp_path / "file.txt"
        not_a_dir.write_text("x", encoding="utf-8")
        with pytest.raises(TurnRejected) as bad_dir:
            o.set_working_dir(not_a_dir)
        assert bad_dir.value.code is ErrorCode.NO_WORKING_DIR
        assert o.state is TurnState.IDLE
        assert runner.starts == []
    finally:
        o.close()


def test_spawn_failure_reports_and_returns_to_idle(
    config: CoworkConfig, event_bus: EventBus, store: FileSessionStore, recorder: Recorder, workdir: Path
) -> None:
    o = Orchestrator(config, event_bus=event_bus, session_store=store, runner=FakeRunner(fail=True))
    o.set_working_dir(workdir)
    try:
        with pytest.raises(SpawnError):
            o.send_message("hello")

        assert o.state is TurnState.IDLE
        assert o.messages == []
        (error,) = recorder.of_kind("run_error")
        assert error.code == "spawn_failed"
        assert o.last_turn is not None and o.last_turn.terminal_state is TurnTerminal.FAILED
    finally:
        o.close()


def test_run_error_leaves_the_session_unchanged(orch: Orchestrator, runner: FakeRunner) -> None:
    orch.send_message("first")
    runner.emit(SessionBound(session_id="sess-1"))
    runner.emit(RunDone())

    orch.send_message("second")
    runner.emit(SessionBound(session_id="sess-2"))
    runner.emit(_assistant("partial answer"))
    runner.emit(RunError(text="rate limited"))

    assert orch.state is TurnState.IDLE
    assert [m.content for m in orch.messages] == ["first"]
    assert orch.agent_session_id == "sess-1"
    assert orch.last_turn.terminal_state is TurnTerminal.FAILED
    assert runner.starts[1]["resume_session_id"] == "sess-1"


def test_cancel_discards_the_turn_and_drops_late_events(
    orch: Orchestrator, runner: FakeRunner, recorder: Recorder
) -> None:
    orch.send_message("long task")
    runner.emit(TextDelta(text="Working on"))

    assert orch.cancel() is True
    assert orch.cancel() is False
    assert runner.handles[0].cancelled

    runner.emit(_assistant("Working on it"))
    runner.emit(RunDone())

    assert orch.state is TurnState.IDLE
    assert orch.messages == []
    assert orch.streaming_text == ""
    assert recorder.kinds() == ["message", "text_delta", "turn_cancelled"]


def test_events_from_a_finished_run_are_dropped(orch: Orchestrator, runner: FakeRunner) -> None:
    orch.send_message("one")
    old = runner.handles[0]
    old.emit(RunDone())
    orch.send_message("two")

    old.emit(_assistant("stale"))
    old.emit(RunDone())

    assert orch.state is TurnState.RUNNING
    assert orch.current_turn.records == []


def test_approval_round_trip(orch: Orchestrator, runner: FakeRunner, recorder: Recorder) -> None:
    turn = orch.send_message("write a file")
    t, box = _ask_approval(
        orch,
        {"tool_name": "Write", "tool_input": {"file_path": "notes.txt"}, "tool_use_id": "toolu_1"},
    )

    assert wait_until(lambda: len(orch.pending_approvals) == 1)
    (pending,) = orch.pending_approvals
    assert pending.approval_id == "toolu_1"
    assert pending.description == 'Write "notes.txt"'

    assert orch.respond_to_approval("toolu_1", True) is True
    assert orch.respond_to_approval("toolu_1", False) is False
    t.join(timeout=5)

    assert box["response"].json() == {"approved": True, "id": "toolu_1"}
    (requested,) = recorder.of_kind("approval_requested")
    assert requested.turn_id == turn.turn_id
    assert wait_until(lambda: len(recorder.of_kind("approval_resolved")) == 1)
    (resolved,) = recorder.of_kind("approval_resolved")
    assert (resolved.approved, resolved.outcome, resolved.turn_id) == (True, "approved", turn.turn_id)
    assert orch.pending_approvals == []


def test_unanswered_approval_times_out_as_denial(
    config: CoworkConfig, event_bus: EventBus, store: FileSessionStore, recorder: Recorder, workdir: Path
) -> None:
    o = Orchestrator(
        replace(config, approval_timeout_s=0.3),
        event_bus=event_bus,
        session_store=store,
        runner=FakeRunner(),
    )
    o.set_working_dir(workdir)
    try:
        o.send_message("delete stuff")
        t, box = _ask_approval(o, {"tool_name": "Bash", "tool_input": {"command": "rm -rf build"}, "tool_use_id": "t9"})
        t.join(timeout=5)

        assert box["response"].json() == {"approved": False, "id": "t9"}
        assert wait_until(lambda: len(recorder.of_kind("approval_resolved")) == 1)
        assert recorder.of_kind("approval_resolved")[0].outcome == "timed_out"
        (requested,) = recorder.of_kind("approval_requested")
        assert requested.details == ("Delete: build",)
        assert o.state is TurnState.RUNNING
    finally:
        o.close()


def test_cancel_denies_open_approvals(orch: Orchestrator, recorder: Recorder) -> None:
    orch.send_message("edit")
    t, box = _ask_approval(orch, {"tool_name": "Edit", "tool_input": {"file_path": "a.py"}, "tool_use_id": "t2"})
    assert wait_until(lambda: len(orch.pending_approvals) == 1)

    orch.cancel()
    t.join(timeout=5)

    assert box["response"].json()["approved"] is False
    assert wait_until(lambda: len(recorder.of_kind("approval_resolved")) == 1)
    assert recorder.of_kind("approval_resolved")[0].outcome == "cancelled"


def test_cancel_racing_an_approval_request_denies_it_at_once(
    orch: Orchestrator, runner: FakeRunner, recorder: Recorder
) -> None:
    orch.send_message("edit")
    read_turn = orch._server._active_turn
    cancelled: list[bool] = []

    def _turn_then_cancel() -> str | None:
        turn_id = read_turn()
        if not cancelled:
            cancelled.append(orch.cancel())
        return turn_id

    orch._server._active_turn = _turn_then_cancel
    started = time.monotonic()
    t, box = _ask_approval(orch, {"tool_name": "Edit", "tool_input": {"file_path": "a.py"}, "tool_use_id": "t_race"})
    t.join(timeout=10)

    assert cancelled == [True]
    assert box["response"].json() == {"approved": False, "id": "t_race"}
    assert time.monotonic() - started < 2.0
    assert recorder.of_kind("approval_requested") == []

    orch._server._active_turn = read_turn
    orch.send_message("next")
    assert orch.pending_approvals == []


def test_approval_without_a_turn_is_denied(orch: Orchestrator, recorder: Recorder) -> None:
    orch.start()
    t, box = _ask_approval(orch, {"tool_name": "Write", "tool_input": {"file_path": "a"}, "tool_use_id": "t3"})
    t.join(timeout=5)

    assert box["response"].json() == {"approved": False}
    assert recorder.of_kind("approval_requested") == []


def test_history_survives_a_restart(
    orch: Orchestrator,
    runner: FakeRunner,
    config: CoworkConfig,
    store: FileSessionStore,
    workdir: Path,
) -> None:
    orch.send_message("remember me")
    runner.emit(SessionBound(session_id="sess-7"))
    runner.emit(_assistant("Noted."))
    runner.emit(RunDone())
    orch.close()

    second_runner = FakeRunner()
    reopened = Orchestrator(config, event_bus=EventBus(), session_store=store, runner=second_runner)
    try:
        snapshot = reopened.set_working_dir(workdir)
        assert [m.content for m in snapshot.messages] == ["remember me", "Noted."]
        assert store.last_working_dir() == workdir.resolve()

        reopened.send_message("and again")
        assert second_runner.starts[0]["resume_session_id"] == "sess-7"
    finally:
        reopened.close()


def test_reset_session_keeps_history(orch: Orchestrator, runner: FakeRunner, store: FileSessionStore, workdir: Path) -> None:
    orch.send_message("hi")
    runner.emit(SessionBound(session_id="sess-1"))
    runner.emit(RunDone())

    orch.reset_session()
    orch.send_message("fresh start")

    assert orch.agent_session_id is None
    assert runner.starts[1]["resume_session_id"] is None
    assert [m.content for m in orch.messages] == ["hi"]


def test_clear_history_removes_the_stored_file(
    orch: Orchestrator, runner: FakeRunner, store: FileSessionStore, workdir: Path
) -> None:
    orch.send_message("hi")
    runner.emit(SessionBound(session_id="sess-1"))
    runner.emit(RunDone())

    orch.clear_history()

    assert orch.messages == []
    assert orch.agent_session_id is None
    assert store.load(workdir).messages == []


def test_end_to_end_with_fake_agent(
    fake_agent: FakeAgent, tmp_path: Path, workdir: Path, recorder: Recorder, monkeypatch: pytest.MonkeyPatch
) -> None:
    env = fake_agent.plan(
        [
            {"out": {"type": "system", "subtype": "init", "session_id": "sess-e2e"}},
            {"out": {"type": "assistant", "message": {"content": [{"type": "text", "text": "Done."}]}}},
            {"out": {"type": "result", "subtype": "success", "result": "Done."}},
        ]
    )
    # The fake agent reads its plan from the inherited environment.
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    config = fake_agent.config(tmp_path / "data")
    bus = EventBus()
    bus.subscribe(recorder)
    store = FileSessionStore(tmp_path / "data" / "sessions", state_dir=tmp_path / "data" / "state")
    o = Orchestrator(config, event_bus=bus, session_store=store)
    o.set_working_dir(workdir)
    try:
        o.send_message("do it")
        assert wait_until(lambda: o.state is TurnState.IDLE, timeout_s=10)
    finally:
        o.close()

    assert [m.content for m in store.load(workdir).messages] == ["do it", "Done."]
    assert recorder.kinds()[-1] == "run_done"
