from __future__ import annotations

from enum import StrEnum


class SessionState(StrEnum):
    EMPTY = "EMPTY"
    READY = "READY"
    STALE = "STALE"


ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.EMPTY: {SessionState.READY},
    SessionState.READY: {SessionState.READY, SessionState.STALE},
    SessionState.STALE: {SessionState.READY, SessionState.STALE},
}


def can_transition(source: SessionState, target: SessionState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


class ReconcileStatus(StrEnum):
    APPLIED = "APPLIED"
    BUSY = "BUSY"
    STALE = "STALE"
    FAILED = "FAILED"
    INVALID = "INVALID"


class FailureKind(StrEnum):
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
