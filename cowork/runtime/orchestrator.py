from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from .approval import ApprovalRegistry, ApprovalRequest, ApprovalResult
from .approval_server import ApprovalServer
from .config import CoworkConfig
from .error_codes import ErrorCode
from .event_bus import EventBus
from .ids import new_id, now_iso, now_ts_ms
from .process_runner import ProcessRunner, RunHandle, SpawnError
from .protocol import (
    ApprovalResolved,
    ChatMessage,
    Message,
    MessageRole,
    RunDone,
    RunError,
    SessionBound,
    StreamEvent,
    TextDelta,
    TurnCancelled,
)
from .session import SessionState
from .stores import DebouncedSessionWriter, SessionStore
from .stream_decoder import StreamingBuffer, coalesce

LOGGER = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETING = "completing"
    CANCELLING = "cancelling"


class TurnTerminal(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TurnRejected(RuntimeError):
    def __init__(self, message: str, *, code: ErrorCode) -> None:
        super().__init__(message)
        self.code = code


@dataclass(slots=True)
class Turn:
    turn_id: str
    instruction: str
    started_at: int
    user_record: ChatMessage
    records: list[ChatMessage] = field(default_factory=list)
    agent_session_id: str | None = None
    terminal_state: TurnTerminal | None = None
    run: RunHandle | None = None


class Orchestrator:
    """
    Turn state machine: idle -> running -> (completing ->) idle, or running -> cancelling -> idle.

    Locking: runner callbacks arrive holding the run handle's lock and then take
    `_lock`. Nothing here calls into the runner while holding `_lock`, so the two
    never invert. Events are published under `_lock`; bus handlers must not block.
    """

    def __init__(
        self,
        config: CoworkConfig,
        *,
        event_bus: EventBus,
        session_store: SessionStore,
        runner: ProcessRunner | None = None,
        registry: ApprovalRegistry | None = None,
        settings_path: Path | None = None,
    ) -> None:
        self._config = config
        self._event_bus = event_bus
        self._store = session_store
        self._runner = runner or ProcessRunner(config)
        self._registry = registry or ApprovalRegistry()
        self._settings_path = settings_path
        self._writer = DebouncedSessionWriter(session_store, delay_s=config.save_debounce_s)
        self._server = ApprovalServer(
            self._registry,
            timeout_s=config.approval_timeout_s,
            active_turn=self._active_turn_id,
            on_request=self._on_approval_request,
            on_resolved=self._on_approval_resolved,
        )

        self._lock = threading.RLock()
        self._state = TurnState.IDLE
        self._session: SessionState | None = None
        self._turn: Turn | None = None
        self._last_turn: Turn | None = None
        self._buffer = StreamingBuffer()
        self._approvals: dict[str, ApprovalRequest] = {}

    # --- lifecycle ---

    def start(self) -> int:
        return self._server.start()

    def close(self) -> None:
        self.cancel()
        self._registry.deny_all()
        self._writer.close()
        self._server.close()

    # --- properties ---

    @property
    def state(self) -> TurnState:
        with self._lock:
            return self._state

    @property
    def working_dir(self) -> Path | None:
        with self._lock:
            return self._session.working_dir if self._session is not None else None

    @property
    def streaming_text(self) -> str:
        with self._lock:
            return self._buffer.text

    @property
    def messages(self) -> list[ChatMessage]:
        with self._lock:
            return list(self._session.messages) if self._session is not None else []

    @property
    def agent_session_id(self) -> str | None:
        with self._lock:
            return self._session.agent_session_id if self._session is not None else None

    @property
    def current_turn(self) -> Turn | None:
        with self._lock:
            return self._turn

    @property
    def last_turn(self) -> Turn | None:
        with self._lock:
            return self._last_turn

    @property
    def approval_port(self) -> int | None:
        return self._server.port

    @property
    def pending_approvals(self) -> list[ApprovalRequest]:
        with self._lock:
            turn_id = self._turn.turn_id if self._turn is not None else None
            return [
                r
                for r in self._approvals.values()
                if r.turn_id == turn_id and self._registry.is_pending(r.approval_id)
            ]

    # --- working directory and session ---

    def set_working_dir(self, path: Path) -> SessionState:
        resolved = Path(path).expanduser().resolve()
        if not resolved.is_dir():
            raise TurnRejected(f"Not a directory: {resolved}", code=ErrorCode.NO_WORKING_DIR)
        with self._lock:
            self._require_idle("change the working directory")
            if self._session is not None:
                self._writer.flush()
            self._session = self._store.load(resolved)
            snapshot = self._session.snapshot()
        try:
            self._store.set_last_working_dir(resolved)
        except OSError as e:
            LOGGER.warning("Failed to remember working directory %s: %s", resolved, e)
        LOGGER.info("Working directory set to %s (%d messages)", resolved, len(snapshot.messages))
        return snapshot

    def reset_session(self) -> None:
        """Forget the agent's session id; the next turn starts a fresh agent conversation."""

        with self._lock:
            self._require_idle("reset the session")
            if self._session is None:
                return
            self._session.agent_session_id = None
            self._writer.schedule(self._session)

    def clear_history(self) -> None:
        with self._lock:
            self._require_idle("clear history")
            if self._session is None:
                return
            self._session.clear()
            self._writer.flush()
            try:
                self._store.delete(self._session.working_dir)
            except OSError as e:
                LOGGER.warning("Failed to delete stored session for %s: %s", self._session.working_dir, e)

    # --- turns ---

    def send_message(self, text: str) -> Turn:
        instruction = text.strip() if isinstance(text, str) else ""
        if not instruction:
            raise TurnRejected("Message is empty.", code=ErrorCode.BAD_REQUEST)

        port = self._server.port if self._server.running else self.start()
        with self._lock:
            self._require_idle("send a message")
            session = self._session
            if session is None:
                raise TurnRejected("No working directory selected.", code=ErrorCode.NO_WORKING_DIR)

            turn_id = new_id("turn")
            user_record = ChatMessage(
                id=new_id("msg"),
                role=MessageRole.USER.value,
                content=instruction,
                timestamp=now_iso(),
            )
            turn = Turn(turn_id=turn_id, instruction=instruction, started_at=now_ts_ms(), user_record=user_record)
            self._turn = turn
            self._state = TurnState.RUNNING
            self._buffer.reset()

            try:
                # Reader threads block on `_lock` until `turn.run` is set below.
                handle = self._runner.start(
                    instruction,
                    session.working_dir,
                    {self._config.port_env_var: str(port)},
                    on_event=self._on_run_event,
                    on_exit=self._on_run_exit,
                    resume_session_id=session.agent_session_id,
                    settings_path=self._settings_path,
                )
            except SpawnError as e:
                LOGGER.error("Agent spawn failed: %s", e)
                turn.terminal_state = TurnTerminal.FAILED
                self._finish_turn(turn)
                self._event_bus.publish(RunError(text=str(e), code=ErrorCode.SPAWN_FAILED.value, turn_id=turn_id))
                raise

            turn.run = handle
            self._event_bus.publish(
                Message(
                    role=user_record.role,
                    content=user_record.content,
                    timestamp=user_record.timestamp,
                    message_id=user_record.id,
                    turn_id=turn_id,
                )
            )
        LOGGER.info("Turn %s started (run=%s)", turn_id, handle.run_id)
        return turn

    def cancel(self) -> bool:
        with self._lock:
            turn = self._turn
            if self._state is not TurnState.RUNNING or turn is None:
                return False
            self._state = TurnState.CANCELLING
            turn.terminal_state = TurnTerminal.CANCELLED
            handle = turn.run
            self._finish_turn(turn)

        if handle is not None:
            self._runner.cancel(handle)
        LOGGER.info("Turn %s cancelled", turn.turn_id)
        self._event_bus.publish(TurnCancelled(turn_id=turn.turn_id))
        return True

    def respond_to_approval(self, approval_id: str, approved: bool) -> bool:
        return self._registry.resolve(approval_id, approved)

    # --- runner callbacks ---

    def _on_run_event(self, handle: RunHandle, event: StreamEvent) -> None:
        with self._lock:
            turn = self._turn
            if turn is None or turn.run is not handle or self._state is not TurnState.RUNNING:
                LOGGER.debug("Dropping %s from inactive run %s", event.kind, handle.run_id)
                return
            event = replace(event, turn_id=turn.turn_id)

            if isinstance(event, TextDelta):
                self._buffer.append(event.text)
            elif isinstance(event, Message):
                self._buffer.reset()
                turn.records = coalesce(turn.records, event)
            elif isinstance(event, SessionBound):
                turn.agent_session_id = event.session_id
            elif isinstance(event, RunDone):
                self._complete_turn(turn)
            elif isinstance(event, RunError):
                LOGGER.warning("Turn %s failed (%s): %s", turn.turn_id, event.code, event.text)
                turn.terminal_state = TurnTerminal.FAILED
                self._finish_turn(turn)

            self._event_bus.publish(event)

    def _on_run_exit(self, handle: RunHandle, returncode: int | None) -> None:
        LOGGER.debug("Run %s exit callback (code=%s, cancelled=%s)", handle.run_id, returncode, handle.cancelled)

    def _complete_turn(self, turn: Turn) -> None:
        self._state = TurnState.COMPLETING
        session = self._session
        if session is not None:
            session.commit_turn([turn.user_record, *turn.records])
            if turn.agent_session_id:
                session.agent_session_id = turn.agent_session_id
            self._writer.schedule(session)
        turn.terminal_state = TurnTerminal.COMPLETED
        self._finish_turn(turn)
        LOGGER.info("Turn %s completed (%d records committed)", turn.turn_id, 1 + len(turn.records))

    def _finish_turn(self, turn: Turn) -> None:
        denied = self._registry.deny_turn(turn.turn_id)
        if denied:
            LOGGER.info("Denied %d open approval(s) for turn %s", len(denied), turn.turn_id)
        self._buffer.reset()
        self._last_turn = turn
        self._turn = None
        self._state = TurnState.IDLE

    # --- approval callbacks (HTTP handler threads) ---

    def _active_turn_id(self) -> str | None:
        with self._lock:
            if self._state is not TurnState.RUNNING or self._turn is None:
                return None
            return self._turn.turn_id

    def _on_approval_request(self, request: ApprovalRequest) -> None:
        with self._lock:
            self._approvals[request.approval_id] = request
            self._event_bus.publish(request.to_event())

    def _on_approval_resolved(self, request: ApprovalRequest, result: ApprovalResult) -> None:
        with self._lock:
            self._approvals.pop(request.approval_id, None)
            self._event_bus.publish(
                ApprovalResolved(
                    approval_id=request.approval_id,
                    approved=result.approved,
                    outcome=result.outcome.value,
                    turn_id=request.turn_id,
                )
            )

    def _require_idle(self, action: str) -> None:
        if self._state is not TurnState.IDLE:
            raise TurnRejected(f"Cannot {action} while a turn is {self._state.value}.", code=ErrorCode.BUSY)
