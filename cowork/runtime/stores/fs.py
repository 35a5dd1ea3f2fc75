from __future__ import annotations

import json
import logging
import threading
from hashlib import sha256
from pathlib import Path
from typing import Any

from ..error_codes import ErrorCode
from ..session import SessionState
from .base import SessionStore

LOGGER = logging.getLogger(__name__)

LAST_WORKING_DIR_FILENAME = "last_working_dir.json"


def replace_surrogates(text: str) -> str:
    """Swap lone surrogate codepoints (U+D800..U+DFFF) for U+FFFD so the text encodes as UTF-8."""

    out: list[str] = []
    changed = False
    for ch in text:
        o = ord(ch)
        if 0xD800 <= o <= 0xDFFF:
            out.append("\uFFFD")
            changed = True
        else:
            out.append(ch)
    return "".join(out) if changed else text


def _sanitize_json_value(value: Any) -> Any:
    if isinstance(value, str):
        return replace_surrogates(value)
    if isinstance(value, list):
        return [_sanitize_json_value(v) for v in value]
    if isinstance(value, dict):
        out: dict[Any, Any] = {}
        for k, v in value.items():
            key = replace_surrogates(k) if isinstance(k, str) else k
            out[key] = _sanitize_json_value(v)
        return out
    return value


def _safe_write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(
        json.dumps(_sanitize_json_value(obj), ensure_ascii=False, sort_keys=True, indent=2),
        encoding="utf-8",
        errors="backslashreplace",
    )
    tmp.replace(path)


def session_key(working_dir: Path) -> str:
    resolved = str(working_dir.expanduser().resolve())
    return sha256(resolved.encode("utf-8")).hexdigest()[:16]


class FileSessionStore(SessionStore):
    """One JSON document per working directory, always rewritten whole."""

    def __init__(self, root: Path, *, state_dir: Path | None = None) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._state_dir = state_dir or root

    def _path(self, working_dir: Path) -> Path:
        return self._root / f"{session_key(working_dir)}.json"

    def load(self, working_dir: Path) -> SessionState:
        working_dir = working_dir.expanduser().resolve()
        path = self._path(working_dir)
        if not path.exists():
            return SessionState(working_dir=working_dir)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("session document must be an object")
            return SessionState.from_dict(raw, working_dir=working_dir)
        except (OSError, ValueError, KeyError, TypeError) as e:
            LOGGER.warning("Ignoring unreadable session file %s: %s", path, e)
            return SessionState(working_dir=working_dir)

    def save(self, state: SessionState) -> None:
        _safe_write_json(self._path(state.working_dir), state.to_dict())

    def delete(self, working_dir: Path) -> None:
        self._path(working_dir).unlink(missing_ok=True)

    def last_working_dir(self) -> Path | None:
        path = self._state_dir / LAST_WORKING_DIR_FILENAME
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            LOGGER.warning("Ignoring unreadable %s: %s", path, e)
            return None
        value = raw.get("working_dir") if isinstance(raw, dict) else None
        if not isinstance(value, str) or not value:
            return None
        candidate = Path(value)
        return candidate if candidate.is_dir() else None

    def set_last_working_dir(self, path: Path) -> None:
        _safe_write_json(
            self._state_dir / LAST_WORKING_DIR_FILENAME,
            {"working_dir": str(path.expanduser().resolve())},
        )


class DebouncedSessionWriter:
    """
    Coalesce bursts of session saves into one write after `delay_s` of quiet.

    `schedule` snapshots the state immediately, so later mutations by the caller do
    not leak into a pending write. Failures are logged and counted, never raised.
    """

    def __init__(self, store: SessionStore, *, delay_s: float) -> None:
        self._store = store
        self._delay_s = max(0.0, float(delay_s))
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: SessionState | None = None
        self._timer: threading.Timer | None = None
        self._closed = False
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def schedule(self, state: SessionState) -> None:
        snapshot = state.snapshot()
        with self._lock:
            self._pending = snapshot
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._closed:
                timer = threading.Timer(self._delay_s, self._write_pending)
                timer.daemon = True
                self._timer = timer
                timer.start()
                return
        self._write_pending()

    def flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._write_pending()

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.flush()

    def _write_pending(self) -> None:
        with self._write_lock:
            with self._lock:
                state = self._pending
                self._pending = None
                self._timer = None
            if state is None:
                return
            try:
                self._store.save(state)
            except Exception:
                self._failures += 1
                LOGGER.exception(
                    "[%s] Failed to save session for %s", ErrorCode.PERSISTENCE_FAILED.value, state.working_dir
                )
