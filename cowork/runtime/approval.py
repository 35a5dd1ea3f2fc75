from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .ids import now_ts_ms
from .protocol import ApprovalRequested

LOGGER = logging.getLogger(__name__)


class ApprovalOutcome(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ApprovalRegistryError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    approval_id: str
    tool_name: str
    description: str
    raw_input: str
    details: list[str] = field(default_factory=list)
    tool_input: dict[str, Any] = field(default_factory=dict)
    turn_id: str | None = None

    def to_event(self) -> ApprovalRequested:
        return ApprovalRequested(
            approval_id=self.approval_id,
            tool_name=self.tool_name,
            description=self.description,
            raw_input=self.raw_input,
            details=tuple(self.details),
            turn_id=self.turn_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.approval_id,
            "tool_name": self.tool_name,
            "description": self.description,
            "raw_input": self.raw_input,
            "details": list(self.details),
        }


@dataclass(frozen=True, slots=True)
class ApprovalResult:
    approved: bool
    outcome: ApprovalOutcome


class PendingApproval:
    """Waiter handle returned by `ApprovalRegistry.register`; resolved exactly once."""

    __slots__ = ("approval_id", "turn_id", "created_at", "_event", "_result")

    def __init__(self, approval_id: str, *, turn_id: str | None) -> None:
        self.approval_id = approval_id
        self.turn_id = turn_id
        self.created_at = now_ts_ms()
        self._event = threading.Event()
        self._result: ApprovalResult | None = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    @property
    def result(self) -> ApprovalResult | None:
        return self._result

    def _settle(self, result: ApprovalResult) -> None:
        self._result = result
        self._event.set()


class ApprovalRegistry:
    """
    Rendezvous between agent-side approval requests and out-of-band responses.

    All mutation happens under one lock: an entry leaves the pending map in the same
    critical section that records its decision, so no caller observes a half-resolved
    entry and a second resolution for the same id is always a no-op.
    """

    def __init__(self, *, resolved_memory: int = 1024) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, PendingApproval] = {}
        self._resolved: dict[str, ApprovalResult] = {}
        self._resolved_memory = max(1, int(resolved_memory))

    def register(self, approval_id: str, *, turn_id: str | None = None) -> PendingApproval:
        if not isinstance(approval_id, str) or not approval_id:
            raise ValueError("approval_id must be a non-empty string.")
        with self._lock:
            if approval_id in self._pending or approval_id in self._resolved:
                raise ApprovalRegistryError(f"Approval id already registered: {approval_id}")
            waiter = PendingApproval(approval_id, turn_id=turn_id)
            self._pending[approval_id] = waiter
        LOGGER.debug("Registered approval %s (turn=%s)", approval_id, turn_id)
        return waiter

    def is_known(self, approval_id: str) -> bool:
        with self._lock:
            return approval_id in self._pending or approval_id in self._resolved

    def is_pending(self, approval_id: str) -> bool:
        with self._lock:
            return approval_id in self._pending

    def pending_ids(self, *, turn_id: str | None = None) -> list[str]:
        with self._lock:
            return [
                aid for aid, waiter in self._pending.items() if turn_id is None or waiter.turn_id == turn_id
            ]

    def resolve(self, approval_id: str, approved: bool) -> bool:
        outcome = ApprovalOutcome.APPROVED if approved else ApprovalOutcome.DENIED
        return self._settle(approval_id, ApprovalResult(approved=bool(approved), outcome=outcome))

    def wait(self, waiter: PendingApproval, timeout_s: float | None) -> ApprovalResult:
        """
        Block until `waiter` is resolved or `timeout_s` elapses.

        A timeout settles the entry as a denial through the same path as an explicit
        rejection; if a response wins the race, its result is returned instead.
        """

        deadline = None if timeout_s is None else time.monotonic() + max(0.0, float(timeout_s))
        while not waiter.done:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                break
            waiter._event.wait(timeout=0.25 if remaining is None else min(0.25, remaining))

        if not waiter.done:
            timed_out = ApprovalResult(approved=False, outcome=ApprovalOutcome.TIMED_OUT)
            if self._settle(waiter.approval_id, timed_out):
                LOGGER.warning("Approval %s timed out; treating as denied", waiter.approval_id)

        result = waiter.result
        if result is None:
            raise RuntimeError(f"Approval {waiter.approval_id} finished without a result.")
        return result

    def deny_turn(self, turn_id: str | None) -> list[str]:
        """Force-deny every entry opened during `turn_id`; returns the affected ids."""

        denied: list[str] = []
        for approval_id in self.pending_ids(turn_id=turn_id):
            if self._settle(approval_id, ApprovalResult(approved=False, outcome=ApprovalOutcome.CANCELLED)):
                denied.append(approval_id)
        return denied

    def deny_all(self) -> list[str]:
        return self.deny_turn(None)

    def cancel(self, approval_id: str) -> bool:
        """Settle one pending entry as cancelled; False when it was already settled."""

        return self._settle(approval_id, ApprovalResult(approved=False, outcome=ApprovalOutcome.CANCELLED))

    def _settle(self, approval_id: str, result: ApprovalResult) -> bool:
        with self._lock:
            waiter = self._pending.pop(approval_id, None)
            if waiter is None:
                known = approval_id in self._resolved
                LOGGER.info(
                    "Ignoring resolution for %s approval %s",
                    "already-resolved" if known else "unknown",
                    approval_id,
                )
                return False
            self._resolved[approval_id] = result
            while len(self._resolved) > self._resolved_memory:
                self._resolved.pop(next(iter(self._resolved)))
            waiter._settle(result)
        LOGGER.info("Approval %s resolved: %s", approval_id, result.outcome.value)
        return True
