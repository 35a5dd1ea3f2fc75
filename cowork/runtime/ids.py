from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone


def new_id(prefix: str) -> str:
    """Short random id such as `turn_1f3a9c0b7e2d`; only unique, not ordered."""

    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def now_ts_ms() -> int:
    return time.time_ns() // 1_000_000


def now_iso() -> str:
    # Millisecond UTC timestamp with a `Z` suffix, the form stored in session files.
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")
