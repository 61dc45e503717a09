"""
Session Guard

Per-session state machine enforcing the PHI session window:

    ACTIVE --(timeout - warning elapsed)--> WARNING
    WARNING --(activity | continue)--> ACTIVE      emits SESSION_EXTENDED
    ACTIVE | WARNING --(timeout elapsed)--> EXPIRED emits SESSION_TIMEOUT
    ACTIVE | WARNING --(logout)--> EXPIRED         emits LOGOUT

Elapsed time runs from the later of session start and the last qualifying
activity. The token's own expiry caps the deadline: whichever comes first
governs. Exactly one warning timer and one expiry timer are live at a
time; every reset bumps a generation counter so a timer from before the
reset can never fire into the new period.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from phi_audit.audit.errors import SessionExpired
from phi_audit.audit.models import AuditEvent, AuditEventType, AuditResult, format_timestamp
from phi_audit.config import settings
from phi_audit.session.clock import Clock, TimerHandle
from phi_audit.session.state import ActivityKind, ExpiryReason, SessionState, can_transition

logger = logging.getLogger(__name__)


def _iso(epoch: float) -> str:
    return format_timestamp(datetime.fromtimestamp(epoch, tz=timezone.utc))


@dataclass
class SessionSnapshot:
    session_id: str
    user_id: str
    state: SessionState
    token_issued_at: float
    token_expires_at: float
    last_activity_at: float
    expires_at: float
    time_remaining: int
    context: Optional[str] = None
    resource_id: Optional[str] = None
    reason: Optional[ExpiryReason] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "state": self.state.value,
            "tokenIssuedAt": _iso(self.token_issued_at),
            "tokenExpiresAt": _iso(self.token_expires_at),
            "lastActivityAt": _iso(self.last_activity_at),
            "expiresAt": _iso(self.expires_at),
            "timeRemaining": self.time_remaining,
            "context": self.context,
            "resourceId": self.resource_id,
            "reason": self.reason.value if self.reason else None,
        }


class SessionGuard:
    """
    Usage:
        guard = SessionGuard("s1", "u1", iat, exp, clock=SystemClock(), emit=outbox.submit)
        guard.start()
        guard.record_activity("keyboard")
    """

    def __init__(
        self,
        session_id: str,
        user_id: str,
        token_issued_at: float,
        token_expires_at: float,
        clock: Clock,
        emit: Callable[[AuditEvent], None],
        timeout_minutes: Optional[float] = None,
        warning_minutes: Optional[float] = None,
        debounce_seconds: Optional[float] = None,
        on_warning: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[ExpiryReason], None]] = None,
        user_role: Optional[str] = None,
    ):
        timeout_minutes = timeout_minutes if timeout_minutes is not None else settings.phi_session_timeout_minutes
        warning_minutes = warning_minutes if warning_minutes is not None else settings.phi_session_warning_minutes
        if timeout_minutes <= 0:
            raise ValueError("timeout_minutes must be positive")
        if not 0 <= warning_minutes < timeout_minutes:
            raise ValueError("warning_minutes must be smaller than timeout_minutes")

        self.session_id = session_id
        self.user_id = user_id
        self.user_role = user_role
        self.token_issued_at = token_issued_at
        self.token_expires_at = token_expires_at
        self.clock = clock
        self.emit = emit
        self.timeout_seconds = timeout_minutes * 60
        self.warning_seconds = warning_minutes * 60
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else settings.activity_debounce_seconds
        )
        self.on_warning = on_warning
        self.on_expire = on_expire

        self.state = SessionState.ACTIVE
        self.reason: Optional[ExpiryReason] = None
        self.context: Optional[str] = None
        self.phi_cache: dict[str, Any] = {}

        self.started_at: Optional[float] = None
        self.last_activity_at: Optional[float] = None
        self._last_reset_mono: Optional[float] = None
        self._generation = 0
        self._warning_timer: Optional[TimerHandle] = None
        self._expiry_timer: Optional[TimerHandle] = None

    # ==================================
    # Deadlines
    # ==================================

    @property
    def phi_deadline(self) -> float:
        baseline = self.last_activity_at if self.last_activity_at is not None else self.clock.time()
        return baseline + self.timeout_seconds

    @property
    def deadline(self) -> float:
        return min(self.phi_deadline, self.token_expires_at)

    def time_remaining(self) -> int:
        """Whole seconds until min(PHI deadline, token deadline); 0 once expired."""
        if self.state == SessionState.EXPIRED:
            return 0
        return max(0, math.ceil(self.deadline - self.clock.time()))

    def _deadline_reason(self) -> ExpiryReason:
        if self.token_expires_at <= self.phi_deadline:
            return ExpiryReason.TOKEN_EXPIRED
        return ExpiryReason.TIMEOUT

    # ==================================
    # Timers
    # ==================================

    def _cancel_timers(self) -> None:
        for timer in (self._warning_timer, self._expiry_timer):
            if timer is not None:
                timer.cancel()
        self._warning_timer = None
        self._expiry_timer = None

    def _schedule(self) -> None:
        """Cancel both timers and arm fresh ones for the current deadline."""
        self._cancel_timers()
        self._generation += 1
        generation = self._generation

        now = self.clock.time()
        remaining = self.deadline - now
        if remaining <= 0:
            self._expire(self._deadline_reason())
            return

        if self.state == SessionState.ACTIVE:
            self._warning_timer = self.clock.call_later(
                max(0.0, remaining - self.warning_seconds),
                lambda: self._on_warning_timer(generation),
            )
        self._expiry_timer = self.clock.call_later(
            remaining, lambda: self._on_expiry_timer(generation)
        )

    def _on_warning_timer(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._warning_timer = None
        self.signal_warning()

    def _on_expiry_timer(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._expiry_timer = None
        self._expire(self._deadline_reason())

    # ==================================
    # Operations
    # ==================================

    def start(self) -> None:
        """Begin the session window. The session starts ACTIVE."""
        now = self.clock.time()
        self.started_at = now
        self.last_activity_at = now
        self._last_reset_mono = None
        logger.info(f"PHI session {self.session_id} started for user={self.user_id}")
        self._schedule()

    def signal_warning(self) -> bool:
        """
        Move ACTIVE -> WARNING and surface the countdown once.

        Repeated signals while already warning (redundant timers, concurrent
        triggers) are ignored. Returns True only for the signal that warned.
        """
        if not can_transition(self.state, SessionState.WARNING):
            return False
        if self.clock.time() >= self.deadline:
            self._expire(self._deadline_reason())
            return False

        self.state = SessionState.WARNING
        remaining = self.time_remaining()
        logger.info(f"PHI session {self.session_id} warning, {remaining}s remaining")
        if self.on_warning:
            self.on_warning(remaining)
        return True

    def record_activity(self, kind: str | ActivityKind) -> bool:
        """
        Register a qualifying user interaction.

        Bursts inside the debounce window collapse into one reset.
        Returns True when the activity reset the window.

        Raises:
            ValueError: If `kind` is not a qualifying activity
        """
        kind = ActivityKind(kind)
        if self.state == SessionState.EXPIRED:
            return False

        mono = self.clock.monotonic()
        if self._last_reset_mono is not None and mono - self._last_reset_mono < self.debounce_seconds:
            return False

        return self._reset(trigger=kind.value)

    def continue_session(self) -> bool:
        """
        Explicit "continue session" from the warning prompt.

        Raises:
            SessionExpired: If the session has already ended
        """
        if self.state == SessionState.EXPIRED:
            raise SessionExpired(self.reason.value if self.reason else ExpiryReason.TIMEOUT.value)
        return self._reset(trigger="continue")

    def logout(self, user_initiated: bool = True) -> None:
        """End the session now. A user logout is audited as LOGOUT, otherwise as SESSION_TIMEOUT."""
        if self.state == SessionState.EXPIRED:
            return
        self._expire(ExpiryReason.LOGOUT if user_initiated else ExpiryReason.TIMEOUT)

    def teardown(self) -> None:
        """Drop both timers without a transition (session context torn down)."""
        self._cancel_timers()
        self._generation += 1

    def set_context(self, resource_category: Optional[str], resource_id: Optional[str] = None) -> None:
        """
        Record what is on screen.

        The category is reported on timeout. The resource id (the chart or
        record being shown) is PHI and lives only in `phi_cache`, which a
        change of context replaces and expiry clears.
        """
        if self.state == SessionState.EXPIRED:
            return
        self.context = resource_category
        self.phi_cache.clear()
        if resource_id is not None:
            self.phi_cache["resourceId"] = resource_id

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            user_id=self.user_id,
            state=self.state,
            token_issued_at=self.token_issued_at,
            token_expires_at=self.token_expires_at,
            last_activity_at=self.last_activity_at if self.last_activity_at is not None else self.token_issued_at,
            expires_at=self.deadline,
            time_remaining=self.time_remaining(),
            context=self.context,
            resource_id=self.phi_cache.get("resourceId"),
            reason=self.reason,
        )

    # ==================================
    # Internals
    # ==================================

    def _reset(self, trigger: str) -> bool:
        now = self.clock.time()
        if now >= self.deadline:
            self._expire(self._deadline_reason())
            return False

        was_warning = self.state == SessionState.WARNING
        self.state = SessionState.ACTIVE
        self.last_activity_at = now
        self._last_reset_mono = self.clock.monotonic()
        self._schedule()

        if was_warning:
            logger.info(f"PHI session {self.session_id} extended ({trigger})")
            self._emit(
                AuditEventType.SESSION_EXTENDED,
                action="PHI session extended",
                result=AuditResult.SUCCESS,
                details={"trigger": trigger, "expiresAt": _iso(self.deadline)},
            )
        return True

    def _expire(self, reason: ExpiryReason) -> None:
        if self.state == SessionState.EXPIRED:
            return

        self._cancel_timers()
        self._generation += 1
        self.state = SessionState.EXPIRED
        self.reason = reason
        self.phi_cache.clear()
        logger.info(f"PHI session {self.session_id} expired: {reason.value}")

        if reason == ExpiryReason.LOGOUT:
            self._emit(
                AuditEventType.LOGOUT,
                action="User logged out",
                result=AuditResult.SUCCESS,
                details={"reason": reason.value, "context": self.context},
            )
        else:
            self._emit(
                AuditEventType.SESSION_TIMEOUT,
                action="PHI session expired, forced logout",
                result=AuditResult.SUCCESS,
                details={"reason": reason.value, "context": self.context},
            )

        if self.on_expire:
            self.on_expire(reason)

    def _emit(
        self,
        kind: AuditEventType,
        action: str,
        result: AuditResult,
        details: dict[str, Any],
    ) -> None:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            timestamp=_iso(self.clock.time()),
            user_id=self.user_id,
            user_role=self.user_role,
            event=kind.value,
            resource="session",
            resource_id=self.session_id,
            action=action,
            result=result.value,
            session_id=self.session_id,
            details=details,
        )
        try:
            self.emit(event)
        except Exception as e:
            logger.error(f"Failed to emit {kind.value} for session {self.session_id}: {e}")
