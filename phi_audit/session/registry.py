"""
Session registry.

Owns one SessionGuard per open session. Guards are removed as soon as they
expire; the reason is remembered for a while so clients polling an ended
session learn why it ended.
"""

import logging
import uuid
from collections import OrderedDict
from typing import Callable, Optional

from phi_audit.audit.errors import SessionExpired
from phi_audit.audit.models import AuditEvent
from phi_audit.session.clock import Clock, SystemClock
from phi_audit.session.guard import SessionGuard
from phi_audit.session.state import ExpiryReason

logger = logging.getLogger(__name__)

# How many ended sessions to remember reasons for
ENDED_HISTORY = 1000


class SessionRegistry:
    """
    Usage:
        registry = SessionRegistry(emit=outbox.submit)
        guard = registry.create(user_id="u1", token_issued_at=iat, token_expires_at=exp)
    """

    def __init__(
        self,
        emit: Callable[[AuditEvent], None],
        clock: Optional[Clock] = None,
        timeout_minutes: Optional[float] = None,
        warning_minutes: Optional[float] = None,
    ):
        self.emit = emit
        self.clock = clock or SystemClock()
        self.timeout_minutes = timeout_minutes
        self.warning_minutes = warning_minutes
        self._guards: dict[str, SessionGuard] = {}
        self._ended: OrderedDict[str, tuple[str, ExpiryReason]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._guards)

    def create(
        self,
        user_id: str,
        token_issued_at: float,
        token_expires_at: float,
        session_id: Optional[str] = None,
        user_role: Optional[str] = None,
    ) -> SessionGuard:
        """
        Start a guard for a freshly authenticated session.

        Raises:
            SessionExpired: If this session id has already ended
        """
        session_id = session_id or str(uuid.uuid4())

        existing = self._guards.get(session_id)
        if existing is not None:
            return existing

        ended = self._ended.get(session_id)
        if ended is not None:
            logger.warning(f"Refused to reopen ended PHI session {session_id} for user={user_id}")
            raise SessionExpired(ended[1].value)

        guard = SessionGuard(
            session_id=session_id,
            user_id=user_id,
            token_issued_at=token_issued_at,
            token_expires_at=token_expires_at,
            clock=self.clock,
            emit=self.emit,
            timeout_minutes=self.timeout_minutes,
            warning_minutes=self.warning_minutes,
            on_expire=lambda reason: self._on_expire(session_id, user_id, reason),
            user_role=user_role,
        )
        self._guards[session_id] = guard
        guard.start()
        return guard

    def get(self, session_id: str) -> Optional[SessionGuard]:
        return self._guards.get(session_id)

    def ended(self, session_id: str) -> Optional[tuple[str, ExpiryReason]]:
        """(user id, reason) for a recently ended session."""
        return self._ended.get(session_id)

    def _on_expire(self, session_id: str, user_id: str, reason: ExpiryReason) -> None:
        self._guards.pop(session_id, None)
        self._ended[session_id] = (user_id, reason)
        while len(self._ended) > ENDED_HISTORY:
            self._ended.popitem(last=False)

    def close_all(self) -> None:
        """Tear down every guard's timers (application shutdown)."""
        for guard in self._guards.values():
            guard.teardown()
        self._guards.clear()
        logger.info("Session registry closed")
