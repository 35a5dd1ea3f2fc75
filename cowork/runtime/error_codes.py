from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """
    Stable error codes carried by `RunError` events and runtime exceptions.

    UI collaborators switch on these values; never rename an existing member.
    """

    # Turn lifecycle
    BUSY = "busy"
    BAD_REQUEST = "bad_request"
    NO_WORKING_DIR = "no_working_dir"
    CANCELLED = "cancelled"

    # Agent process boundary
    SPAWN_FAILED = "spawn_failed"
    RUN_ERROR = "run_error"
    AGENT_EXIT = "agent_exit"

    # Approvals
    APPROVAL_TIMEOUT = "approval_timeout"
    APPROVAL_UNKNOWN = "approval_unknown"

    # Background persistence
    PERSISTENCE_FAILED = "persistence_failed"

    UNKNOWN = "unknown"
