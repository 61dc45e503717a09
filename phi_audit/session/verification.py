"""
Server-side session verification.

The authoritative PHI window check. Client timers are only a UX signal;
every PHI-sensitive request re-validates here using the token's wall-clock
issue time.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from phi_audit.audit.errors import SessionExpired
from phi_audit.audit.models import format_timestamp
from phi_audit.config import settings

PHI_SESSION_EXPIRED = "PHI session expired"
TOKEN_EXPIRED = "Token expired"
INVALID_PAYLOAD = "Invalid token payload"


@dataclass
class SessionVerification:
    valid: bool
    reason: Optional[str] = None
    expires_at: Optional[float] = None
    time_remaining: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"valid": self.valid}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.expires_at is not None:
            data["expiresAt"] = format_timestamp(
                datetime.fromtimestamp(self.expires_at, tz=timezone.utc)
            )
        if self.time_remaining is not None:
            data["timeRemaining"] = self.time_remaining
        return data


def verify_session(
    claims: Mapping[str, Any],
    now: float,
    timeout_minutes: Optional[float] = None,
    token_lifetime_minutes: Optional[float] = None,
) -> SessionVerification:
    """
    Check a token's claims against the PHI window and the token lifetime.

    The PHI window runs from `iat`; the token deadline is `exp` (or `iat` plus
    the configured lifetime when the token has no `exp`). The earlier of the
    two governs the reported remaining time. The PHI window is checked first.

    Args:
        claims: Decoded token claims
        now: Current epoch seconds
        timeout_minutes: PHI window length
        token_lifetime_minutes: Assumed lifetime for tokens without `exp`
    """
    timeout_minutes = timeout_minutes or settings.phi_session_timeout_minutes
    token_lifetime_minutes = token_lifetime_minutes or settings.token_lifetime_minutes

    issued_at = claims.get("iat")
    if not isinstance(issued_at, (int, float)):
        return SessionVerification(valid=False, reason=INVALID_PAYLOAD)

    expires = claims.get("exp")
    token_deadline = float(expires) if isinstance(expires, (int, float)) else issued_at + token_lifetime_minutes * 60
    phi_deadline = issued_at + timeout_minutes * 60

    if now >= phi_deadline:
        return SessionVerification(
            valid=False, reason=PHI_SESSION_EXPIRED, expires_at=phi_deadline, time_remaining=0
        )
    if now >= token_deadline:
        return SessionVerification(
            valid=False, reason=TOKEN_EXPIRED, expires_at=token_deadline, time_remaining=0
        )

    deadline = min(phi_deadline, token_deadline)
    return SessionVerification(valid=True, expires_at=deadline, time_remaining=int(deadline - now))


def require_phi_session(claims: Mapping[str, Any], now: float) -> SessionVerification:
    """
    Raises:
        SessionExpired: If either deadline has passed
    """
    verification = verify_session(claims, now)
    if not verification.valid:
        raise SessionExpired(verification.reason or PHI_SESSION_EXPIRED)
    return verification
