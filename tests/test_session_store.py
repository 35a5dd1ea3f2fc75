from __future__ import annotations

import json
import threading
from pathlib import Path

from conftest import wait_until

from cowork.runtime.protocol import ChatMessage
from cowork.runtime.session import SessionState
from cowork.runtime.stores import DebouncedSessionWriter, FileSessionStore, SessionStore, replace_surrogates
from cowork.runtime.stores.fs import session_key


def _message(i: int, role: str = "user") -> ChatMessage:
    return ChatMessage(id=f"msg_{i}", role=role, content=f"text {i}", timestamp="2026-01-01T00:00:00Z")


def _workdir(tmp_path: Path, name: str = "proj") -> Path:
    path = tmp_path / name
    path.mkdir(exist_ok=True)
    return path


def test_missing_file_loads_empty_state(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path / "sessions")
    workdir = _workdir(tmp_path)

    state = store.load(workdir)

    assert state.working_dir == workdir.resolve()
    assert state.messages == []
    assert state.agent_session_id is None


def test_save_then_load_restores_messages_and_session_id(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path / "sessions")
    workdir = _workdir(tmp_path)
    state = SessionState(
        working_dir=workdir.resolve(),
        messages=[_message(1), _message(2, "assistant")],
        agent_session_id="sess-42",
    )

    store.save(state)
    loaded = store.load(workdir)

    assert loaded.messages == state.messages
    assert loaded.agent_session_id == "sess-42"


def test_directories_are_kept_apart(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path / "sessions")
    a = _workdir(tmp_path, "a")
    b = _workdir(tmp_path, "b")

    store.save(SessionState(working_dir=a.resolve(), messages=[_message(1)]))

    assert store.load(b).messages == []
    assert session_key(a) != session_key(b)


def test_corrupt_file_loads_empty_state(tmp_path: Path, caplog) -> None:
    root = tmp_path / "sessions"
    store = FileSessionStore(root)
    workdir = _workdir(tmp_path)
    (root / f"{session_key(workdir)}.json").write_text("{not json", encoding="utf-8")

    state = store.load(workdir)

    assert state.messages == []
    assert "Ignoring unreadable session file" in caplog.text


def test_record_without_id_makes_the_file_unreadable(tmp_path: Path) -> None:
    root = tmp_path / "sessions"
    store = FileSessionStore(root)
    workdir = _workdir(tmp_path)
    doc = {"messages": [{"role": "user", "content": "hi", "timestamp": "t"}]}
    (root / f"{session_key(workdir)}.json").write_text(json.dumps(doc), encoding="utf-8")

    assert store.load(workdir).messages == []


def test_surrogates_are_replaced_on_save(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path / "sessions")
    workdir = _workdir(tmp_path)
    bad = ChatMessage(id="m", role="user", content="bad \udcff byte", timestamp="t")

    store.save(SessionState(working_dir=workdir.resolve(), messages=[bad]))

    assert store.load(workdir).messages[0].content == "bad \ufffd byte"


def test_replace_surrogates_keeps_clean_text_as_is() -> None:
    clean = "plain text \u2713"

    assert replace_surrogates("a\udcffb\ud800") == "a\ufffdb\ufffd"
    assert replace_surrogates(clean) is clean


def test_delete(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path / "sessions")
    workdir = _workdir(tmp_path)
    store.save(SessionState(working_dir=workdir.resolve(), messages=[_message(1)]))

    store.delete(workdir)
    store.delete(workdir)

    assert store.load(workdir).messages == []


def test_last_working_dir(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path / "sessions", state_dir=tmp_path / "state")
    workdir = _workdir(tmp_path)

    assert store.last_working_dir() is None
    store.set_last_working_dir(workdir)
    assert store.last_working_dir() == workdir.resolve()

    workdir.rmdir()
    assert store.last_working_dir() is None


class _CountingStore(SessionStore):
    def __init__(self, *, fail: bool = False) -> None:
        self.saved: list[SessionState] = []
        self.fail = fail
        self._lock = threading.Lock()

    def load(self, working_dir: Path) -> SessionState:
        return SessionState(working_dir=working_dir)

    def save(self, state: SessionState) -> None:
        if self.fail:
            raise OSError("disk full")
        with self._lock:
            self.saved.append(state)

    def delete(self, working_dir: Path) -> None:
        pass

    def last_working_dir(self) -> Path | None:
        return None

    def set_last_working_dir(self, path: Path) -> None:
        pass


def test_burst_of_saves_is_coalesced(tmp_path: Path) -> None:
    store = _CountingStore()
    writer = DebouncedSessionWriter(store, delay_s=0.1)
    state = SessionState(working_dir=tmp_path)

    for i in range(5):
        state.messages.append(_message(i))
        writer.schedule(state)

    assert wait_until(lambda: len(store.saved) == 1)
    assert not writer.has_pending
    assert len(store.saved[0].messages) == 5


def test_schedule_takes_a_snapshot(tmp_path: Path) -> None:
    store = _CountingStore()
    writer = DebouncedSessionWriter(store, delay_s=10)
    state = SessionState(working_dir=tmp_path, messages=[_message(1)])

    writer.schedule(state)
    state.messages.append(_message(2))
    writer.flush()

    assert [m.id for m in store.saved[0].messages] == ["msg_1"]


def test_close_flushes_and_later_saves_are_synchronous(tmp_path: Path) -> None:
    store = _CountingStore()
    writer = DebouncedSessionWriter(store, delay_s=10)
    state = SessionState(working_dir=tmp_path)

    writer.schedule(state)
    writer.close()
    assert len(store.saved) == 1

    writer.schedule(state)
    assert len(store.saved) == 2


def test_failed_save_is_logged_not_raised(tmp_path: Path, caplog) -> None:
    writer = DebouncedSessionWriter(_CountingStore(fail=True), delay_s=10)

    writer.schedule(SessionState(working_dir=tmp_path))
    writer.flush()

    assert writer.failures == 1
    assert "[persistence_failed]" in caplog.text
