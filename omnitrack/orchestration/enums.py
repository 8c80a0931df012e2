from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    NEGOTIATING = "negotiating"
    CONVERGED = "converged"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


class FailureReason(str, Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    AUDIT_WRITE_FAILURE = "audit_write_failure"
    INTERNAL_ERROR = "internal_error"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED})

ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.PENDING: frozenset({SessionState.RUNNING, SessionState.FAILED}),
    SessionState.RUNNING: frozenset({SessionState.AGGREGATING, SessionState.FAILED}),
    SessionState.AGGREGATING: frozenset({SessionState.NEGOTIATING, SessionState.FAILED}),
    SessionState.NEGOTIATING: frozenset({SessionState.CONVERGED, SessionState.ESCALATED, SessionState.FAILED}),
    SessionState.CONVERGED: frozenset({SessionState.COMPLETED, SessionState.FAILED}),
    SessionState.ESCALATED: frozenset({SessionState.COMPLETED, SessionState.FAILED}),
    SessionState.COMPLETED: frozenset(),
    SessionState.FAILED: frozenset(),
}


__all__ = ["SessionState", "FailureReason", "TERMINAL_STATES", "ALLOWED_TRANSITIONS"]
