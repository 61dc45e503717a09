"""
PHI session window: per-session guards, the registry that owns them, and
the server-side verification every PHI request goes through.
"""

from .state import ActivityKind, ExpiryReason, SessionState, can_transition
from .clock import Clock, SystemClock
from .guard import SessionGuard, SessionSnapshot
from .registry import SessionRegistry
from .verification import SessionVerification, require_phi_session, verify_session

__all__ = [
    # State
    "ActivityKind",
    "ExpiryReason",
    "SessionState",
    "can_transition",
    # Clock
    "Clock",
    "SystemClock",
    # Guard
    "SessionGuard",
    "SessionSnapshot",
    "SessionRegistry",
    # Verification
    "SessionVerification",
    "require_phi_session",
    "verify_session",
]
