from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Callable

from .config import CoworkConfig
from .error_codes import ErrorCode
from .ids import new_id
from .protocol import RunDone, RunError, StreamEvent, is_terminal
from .stream_decoder import StreamDecoder

LOGGER = logging.getLogger(__name__)

EventCallback = Callable[["RunHandle", StreamEvent], None]
ExitCallback = Callable[["RunHandle", "int | None"], None]
StderrCallback = Callable[["RunHandle", str], None]

_STDERR_TAIL_LINES = 20


class SpawnError(RuntimeError):
    code = ErrorCode.SPAWN_FAILED


class RunHandle:
    """
    One agent invocation.

    Event delivery and cancellation serialize on `_lock`: the reader checks the
    cancelled flag and calls the event callback inside one critical section, so once
    `ProcessRunner.cancel` returns, no further event reaches the callback.
    """

    def __init__(self, proc: subprocess.Popen[str], *, run_id: str) -> None:
        self.run_id = run_id
        self.proc = proc
        self._lock = threading.Lock()
        self._cancelled = False
        self._terminal_delivered = False
        self._done = threading.Event()
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self.returncode: int | None = None

    @property
    def pid(self) -> int:
        return int(self.proc.pid)

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the reader has drained stdout and the exit callback has run."""

        self._done.wait(timeout=timeout)
        return self.returncode


class ProcessRunner:
    def __init__(self, config: CoworkConfig) -> None:
        self._config = config

    def build_argv(
        self,
        instruction: str,
        *,
        resume_session_id: str | None = None,
        settings_path: Path | None = None,
    ) -> list[str]:
        cfg = self._config
        argv = [cfg.agent_command, *cfg.agent_args]
        if cfg.include_partial_messages:
            argv.append("--include-partial-messages")
        if settings_path is not None:
            argv.extend(["--settings", str(settings_path)])
        if resume_session_id:
            argv.extend(["--resume", resume_session_id])
        argv.append(instruction)
        return argv

    def start(
        self,
        instruction: str,
        working_dir: Path,
        env: dict[str, str],
        *,
        on_event: EventCallback,
        on_exit: ExitCallback | None = None,
        on_stderr: StderrCallback | None = None,
        resume_session_id: str | None = None,
        settings_path: Path | None = None,
    ) -> RunHandle:
        argv = self.build_argv(instruction, resume_session_id=resume_session_id, settings_path=settings_path)
        LOGGER.info("Spawning agent in %s (resume=%s)", working_dir, resume_session_id or "-")
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(working_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env={**dict(os.environ), **env},
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn {self._config.agent_command}: {e}") from e

        handle = RunHandle(proc, run_id=new_id("run"))
        stderr_thread = threading.Thread(
            target=self._read_stderr,
            args=(handle, on_stderr),
            name=f"cowork-agent-stderr-{handle.pid}",
            daemon=True,
        )
        stdout_thread = threading.Thread(
            target=self._read_stdout,
            args=(handle, on_event, on_exit, stderr_thread),
            name=f"cowork-agent-stdout-{handle.pid}",
            daemon=True,
        )
        stderr_thread.start()
        stdout_thread.start()
        return handle

    def cancel(self, handle: RunHandle) -> bool:
        """Stop delivering events for `handle` and terminate its process group."""

        with handle._lock:
            if handle._cancelled:
                return False
            handle._cancelled = True
        LOGGER.info("Cancelling agent run %s (pid=%d)", handle.run_id, handle.pid)
        if handle.proc.poll() is not None:
            return True

        try:
            os.killpg(handle.pid, signal.SIGTERM)
        except ProcessLookupError:
            return True
        except OSError:
            handle.proc.terminate()

        escalate = threading.Thread(
            target=self._escalate_kill,
            args=(handle,),
            name=f"cowork-agent-kill-{handle.pid}",
            daemon=True,
        )
        escalate.start()
        return True

    def _escalate_kill(self, handle: RunHandle) -> None:
        try:
            handle.proc.wait(timeout=self._config.cancel_grace_s)
            return
        except subprocess.TimeoutExpired:
            pass
        LOGGER.warning("Agent pid %d ignored SIGTERM; sending SIGKILL", handle.pid)
        try:
            os.killpg(handle.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except OSError:
            handle.proc.kill()

    def _read_stdout(
        self,
        handle: RunHandle,
        on_event: EventCallback,
        on_exit: ExitCallback | None,
        stderr_thread: threading.Thread,
    ) -> None:
        decoder = StreamDecoder()
        stdout = handle.proc.stdout
        try:
            if stdout is not None:
                for line in stdout:
                    if handle.cancelled:
                        # Keep draining so the child never blocks on a full pipe.
                        continue
                    for event in decoder.decode(line):
                        self._deliver(handle, on_event, event)
        except (OSError, ValueError) as e:
            LOGGER.warning("Agent stdout closed unexpectedly: %s", e)

        returncode = handle.proc.wait()
        stderr_thread.join(timeout=2.0)
        handle.returncode = returncode
        LOGGER.info("Agent run %s exited with code %s", handle.run_id, returncode)

        with handle._lock:
            synthesize = not handle._cancelled and not handle._terminal_delivered
        if synthesize:
            if returncode == 0:
                self._deliver(handle, on_event, RunDone(success=True))
            else:
                self._deliver(handle, on_event, self._exit_error(handle, returncode))

        if on_exit is not None:
            try:
                on_exit(handle, returncode)
            except Exception:
                LOGGER.exception("Exit callback failed for run %s", handle.run_id)
        handle._done.set()

    def _deliver(self, handle: RunHandle, on_event: EventCallback, event: StreamEvent) -> None:
        with handle._lock:
            if handle._cancelled:
                return
            if is_terminal(event):
                handle._terminal_delivered = True
            try:
                on_event(handle, event)
            except Exception:
                LOGGER.exception("Event callback failed for run %s (kind=%s)", handle.run_id, event.kind)

    def _exit_error(self, handle: RunHandle, returncode: int) -> RunError:
        text = f"Agent exited with code {returncode}."
        tail = [line for line in handle.stderr_tail if line.strip()]
        if tail:
            text = f"{text}\n" + "\n".join(tail[-5:])
        return RunError(text=text, code=ErrorCode.AGENT_EXIT.value)

    def _read_stderr(self, handle: RunHandle, on_stderr: StderrCallback | None) -> None:
        stderr = handle.proc.stderr
        if stderr is None:
            return
        try:
            for raw in stderr:
                line = raw.rstrip("\n")
                if not line:
                    continue
                handle._stderr_tail.append(line)
                LOGGER.warning("agent stderr: %s", line)
                if on_stderr is not None:
                    try:
                        on_stderr(handle, line)
                    except Exception:
                        LOGGER.exception("Stderr callback failed for run %s", handle.run_id)
        except (OSError, ValueError) as e:
            LOGGER.debug("Agent stderr closed: %s", e)
