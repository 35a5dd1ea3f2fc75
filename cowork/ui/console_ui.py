from __future__ import annotations

import queue
import shutil
import sys
import threading
import time
import unicodedata
from dataclasses import dataclass
from typing import Sequence, Union

from ..runtime.protocol import (
    ActivityFinished,
    ActivityStarted,
    ActivityStatus,
    ApprovalRequested,
    ApprovalResolved,
    ChatMessage,
    Message,
    MessageRole,
    RunDone,
    RunError,
    StreamEvent,
    TextDelta,
    TurnCancelled,
)


@dataclass(frozen=True, slots=True)
class UINotice:
    level: str
    text: str


@dataclass(frozen=True, slots=True)
class _Stop:
    pass


_Item = Union[StreamEvent, UINotice, _Stop]


class ConsoleUI:
    """
    Single-writer, event-driven console UI (line-mode).

    - Only the renderer thread writes to the stream.
    - Event bus handlers and the input loop call `handle_event()` / `notice()` to enqueue.
    - A built-in tick loop drives the spinner without a separate writer thread.
    """

    def __init__(self, *, stream=None, enable_color: bool = True) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._ansi = bool(getattr(self._stream, "isatty", lambda: False)())
        self._enable_color = enable_color and self._ansi

        self._q: "queue.Queue[_Item]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._idle = threading.Event()
        self._idle.set()

        # Render state
        self._waiting = False
        self._assistant_open = False
        self._assistant_last_newline = True
        self._assistant_nl_run = 0
        self._assistant_fresh = False
        self._streamed_parts: list[str] = []
        self._activities: dict[str, str] = {}

        self._spinner_frame = 0
        self._last_spinner_paint = 0.0
        self._plain_waiting_printed = False

    # --- lifecycle ---
    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._render_loop, name="cowork-ui", daemon=True)
        self._thread.start()

    def stop(self, *, join_timeout_s: float = 1.0) -> None:
        self._stop.set()
        self._q.put_nowait(_Stop())
        t = self._thread
        self._thread = None
        if t is not None:
            t.join(timeout=join_timeout_s)

    def handle_event(self, event: StreamEvent) -> None:
        self._idle.clear()
        self._q.put_nowait(event)

    def notice(self, text: str, *, level: str = "info") -> None:
        self._idle.clear()
        self._q.put_nowait(UINotice(level=level, text=text))

    def drain(self, timeout_s: float = 1.0) -> bool:
        """Wait until everything enqueued so far has been rendered."""

        if self._thread is None:
            while True:
                try:
                    self._render(self._q.get_nowait())
                except queue.Empty:
                    return True
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            if self._q.empty() and self._idle.is_set():
                return True
            time.sleep(0.01)
        return False

    # --- high level helpers ---
    def print_header(self, *, working_dir: str, session_id: str | None) -> None:
        self.notice(f"Working directory: {working_dir}", level="dim")
        if session_id:
            self.notice(f"Resuming agent session {session_id}", level="dim")
        self.notice("Commands: /help /clear /reset /cd /exit. Ctrl+C cancels.", level="dim")

    def print_history(self, messages: Sequence[ChatMessage]) -> None:
        for m in messages:
            role = "You" if m.role == MessageRole.USER.value else "Assistant"
            self.notice(f"{role}: {m.content}", level="history")

    # --- rendering ---
    def _render_loop(self) -> None:
        tick_interval_s = 0.08
        while not self._stop.is_set():
            try:
                item = self._q.get(timeout=tick_interval_s)
            except queue.Empty:
                self._idle.set()
                self._tick()
                continue
            try:
                self._render(item)
            except Exception:
                # UI must not crash the process.
                pass
            if self._q.empty():
                self._idle.set()

        try:
            self._clear_spinner_line()
        except Exception:
            pass

    def _tick(self) -> None:
        if not self._waiting or not self._ansi:
            return
        now = time.monotonic()
        if (now - self._last_spinner_paint) < 0.06:
            return
        self._last_spinner_paint = now
        self._paint_spinner()

    def _render(self, item: _Item) -> None:
        if isinstance(item, _Stop):
            self._stop_waiting(clear_line=True)
            return

        if isinstance(item, UINotice):
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            if item.level == "error":
                self._println_red(f"[error] {item.text}")
            elif item.level == "warn":
                self._println_yellow(f"[warn] {item.text}")
            elif item.level == "dim":
                self._println_dim(item.text)
            else:
                self._println(item.text)
            return

        if isinstance(item, Message):
            if item.role == MessageRole.USER.value:
                self._ensure_newline_if_streaming()
                self._println_user(item.content)
                self._start_waiting()
                return
            self._stop_waiting(clear_line=True)
            streamed = "".join(self._streamed_parts)
            self._streamed_parts.clear()
            if streamed.strip() != item.content.strip():
                self._replace_streamed(streamed)
                self._start_assistant_if_needed()
                self._write_assistant(item.content)
            self._ensure_newline_if_streaming()
            return

        if isinstance(item, TextDelta):
            if not item.text:
                return
            self._stop_waiting(clear_line=True)
            self._start_assistant_if_needed()
            self._streamed_parts.append(item.text)
            self._write_assistant(item.text)
            return

        if isinstance(item, ActivityStarted):
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._activities[item.activity_id] = item.description
            self._println_dim(f"[tool] {item.description} …")
            self._streamed_parts.clear()
            return

        if isinstance(item, ActivityFinished):
            self._ensure_newline_if_streaming()
            desc = self._activities.pop(item.activity_id, "tool")
            if item.status == ActivityStatus.ERROR.value:
                self._println_red(f"[tool] {desc} failed")
            else:
                self._println_dim(f"[tool] {desc} done")
            return

        if isinstance(item, ApprovalRequested):
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._println_yellow(f"[approval] {item.description}")
            for line in item.details:
                self._println_dim(f"  {line}")
            self._println_dim(f"  ({item.raw_input})")
            return

        if isinstance(item, ApprovalResolved):
            self._ensure_newline_if_streaming()
            label = {"approved": "approved", "denied": "denied", "timed_out": "timed out (denied)"}.get(
                item.outcome, "withdrawn"
            )
            self._println_dim(f"[approval] {label}")
            return

        if isinstance(item, RunDone):
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._streamed_parts.clear()
            self._activities.clear()
            return

        if isinstance(item, RunError):
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._println_red(f"[error] {item.code}: {item.text}")
            self._streamed_parts.clear()
            self._activities.clear()
            return

        if isinstance(item, TurnCancelled):
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._println_yellow("[cancel] cancelled")
            self._streamed_parts.clear()
            self._activities.clear()
            return

    # --- low-level printing ---
    def _color(self, s: str, code: str) -> str:
        if not self._enable_color:
            return s
        return f"\x1b[{code}m{s}\x1b[0m"

    def _write(self, s: str) -> None:
        self._stream.write(s)
        try:
            self._stream.flush()
        except Exception:
            pass

    def _println(self, s: str = "") -> None:
        self._write(s + "\n")

    def _println_dim(self, s: str) -> None:
        self._println(self._color(s, "2"))

    def _println_red(self, s: str) -> None:
        self._println(self._color(s, "31"))

    def _println_yellow(self, s: str) -> None:
        self._println(self._color(s, "33"))

    def _println_user(self, text: str) -> None:
        self._println(self._color("You: ", "1;32") + text)

    def _start_assistant_if_needed(self) -> None:
        if self._assistant_open:
            return
        self._write(self._color("Assistant: ", "1;36"))
        self._assistant_open = True
        self._assistant_last_newline = False
        self._assistant_nl_run = 0
        self._assistant_fresh = True

    def _write_assistant(self, delta: str) -> None:
        # Avoid an empty "Assistant:" line when the first chunk begins with newlines.
        if self._assistant_fresh:
            delta = delta.lstrip("\n")
        delta = self._compact_blank_lines(delta)
        if not delta:
            return
        self._write(delta)
        self._assistant_fresh = False
        self._assistant_last_newline = delta.endswith("\n")

    def _ensure_newline_if_streaming(self) -> None:
        if not self._assistant_open:
            return
        if not self._assistant_last_newline:
            self._println()
        self._assistant_open = False
        self._assistant_last_newline = True
        self._assistant_nl_run = 0

    def _replace_streamed(self, streamed: str) -> None:
        """Drop or mark streamed text that the final message supersedes."""

        if not streamed:
            self._ensure_newline_if_streaming()
            return
        if self._ansi and self._assistant_open and "\n" not in streamed:
            # Still on the streamed line: erase it and redraw.
            self._write("\r\x1b[2K\r")
            self._assistant_open = False
            self._assistant_last_newline = True
            self._assistant_nl_run = 0
            return
        self._ensure_newline_if_streaming()
        self._println_dim("[revised]")

    def _compact_blank_lines(self, delta: str) -> str:
        # Keep the output compact in line-mode: collapse 2+ newlines into 1 newline.
        out: list[str] = []
        nl_run = self._assistant_nl_run
        for ch in delta:
            if ch == "\r":
                continue
            if ch == "\n":
                if nl_run >= 1:
                    continue
                nl_run += 1
                out.append(ch)
                continue
            nl_run = 0
            out.append(ch)
        self._assistant_nl_run = nl_run
        return "".join(out)

    def _start_waiting(self) -> None:
        self._waiting = True
        self._spinner_frame = 0
        self._last_spinner_paint = 0.0
        self._plain_waiting_printed = False
        self._paint_spinner()

    def _stop_waiting(self, *, clear_line: bool) -> None:
        if not self._waiting:
            return
        self._waiting = False
        if clear_line:
            self._clear_spinner_line()

    def _clear_spinner_line(self) -> None:
        if not self._ansi:
            return
        self._write("\r\x1b[2K\r")

    def _paint_spinner(self) -> None:
        if not self._waiting:
            return
        if not self._ansi:
            if not self._plain_waiting_printed:
                self._println_dim("Working…")
                self._plain_waiting_printed = True
            return
        frames: Sequence[str] = ("◌", "◍", "●", "◍")
        ch = frames[self._spinner_frame % len(frames)]
        self._spinner_frame += 1
        cols = shutil.get_terminal_size((80, 20)).columns
        line = self._truncate_to_width(f"{ch} Working…", max(20, int(cols) - 1))
        # Paint in-place.
        self._write("\r\x1b[2K\r" + line)

    def _display_width(self, s: str) -> int:
        w = 0
        for ch in s:
            if unicodedata.combining(ch):
                continue
            eaw = unicodedata.east_asian_width(ch)
            w += 2 if eaw in {"W", "F"} else 1
        return w

    def _truncate_to_width(self, s: str, width: int) -> str:
        if width <= 0:
            return ""
        if self._display_width(s) <= width:
            return s
        out: list[str] = []
        used = 0
        for ch in s:
            if unicodedata.combining(ch):
                out.append(ch)
                continue
            eaw = unicodedata.east_asian_width(ch)
            cw = 2 if eaw in {"W", "F"} else 1
            if used + cw > width:
                break
            out.append(ch)
            used += cw
        return "".join(out)
