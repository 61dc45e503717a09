"""PHI session state machine."""

from enum import Enum
from typing import Set


class SessionState(str, Enum):
    """States of a PHI session."""

    ACTIVE = "active"
    WARNING = "warning"

    # Terminal state
    EXPIRED = "expired"


class ExpiryReason(str, Enum):
    """Why a session ended. Sent to clients as the re-authentication reason code."""

    TIMEOUT = "timeout"
    TOKEN_EXPIRED = "token_expired"
    LOGOUT = "logout"


class ActivityKind(str, Enum):
    """User interactions that count as session activity."""

    POINTER = "pointer"
    KEYBOARD = "keyboard"
    SCROLL = "scroll"
    TOUCH = "touch"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, Set[SessionState]] = {
    SessionState.ACTIVE: {
        SessionState.WARNING,
        SessionState.EXPIRED,
    },
    SessionState.WARNING: {
        SessionState.ACTIVE,  # Activity or "continue session"
        SessionState.EXPIRED,
    },
    SessionState.EXPIRED: set(),  # Terminal state
}


def can_transition(from_state: SessionState, to_state: SessionState) -> bool:
    """Check if a state transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def is_terminal_state(state: SessionState) -> bool:
    """Check if state is terminal (no further transitions)."""
    return not VALID_TRANSITIONS.get(state)
