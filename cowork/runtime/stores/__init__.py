from __future__ import annotations

from .base import SessionStore
from .fs import DebouncedSessionWriter, FileSessionStore, replace_surrogates

__all__ = [
    "SessionStore",
    "DebouncedSessionWriter",
    "FileSessionStore",
    "replace_surrogates",
]
