"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    PENDING ──> STARTING ──> RUNNING ──┬──> EXITED
                    │                  │
                    └──> FAILED <──────┘

    Any non-terminal state ──> KILLED  (explicit kill)
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.PENDING: {
        SessionState.STARTING,
        SessionState.KILLED,
    },
    SessionState.STARTING: {
        SessionState.RUNNING,
        SessionState.FAILED,
        SessionState.KILLED,
    },
    SessionState.RUNNING: {
        SessionState.EXITED,
        SessionState.FAILED,
        SessionState.KILLED,
    },
    SessionState.EXITED: set(),
    SessionState.FAILED: set(),
    SessionState.KILLED: set(),
}

TERMINAL_STATES = frozenset(
    state for state, allowed in VALID_TRANSITIONS.items() if not allowed
)


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def is_terminal(state: SessionState) -> bool:
    return state in TERMINAL_STATES
