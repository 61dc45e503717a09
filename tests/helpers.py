"""Builders for test events, records and tokens, plus a manual clock."""

import itertools
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import jwt

from phi_audit.audit.models import AuditEvent, AuditLogRecord, format_timestamp
from phi_audit.config import settings
from phi_audit.session.clock import Clock


def make_event(**fields: Any) -> AuditEvent:
    """A valid LOGIN event; keyword arguments use wire (camelCase) names."""
    data = {
        "id": str(uuid.uuid4()),
        "timestamp": "2026-03-01T12:00:00.000Z",
        "userId": "user-1",
        "userRole": "therapist",
        "event": "LOGIN",
        "action": "User logged in",
        "result": "success",
    }
    data.update(fields)
    return AuditEvent.model_validate(data)


def make_record(
    event_time: datetime,
    user_id: Optional[str] = "user-1",
    event: str = "LOGIN",
    record_id: Optional[str] = None,
    result: str = "success",
    phi_accessed: bool = False,
    patient_ref: Optional[str] = None,
    ip_address: Optional[str] = None,
    ttl: Optional[int] = None,
    details: Optional[dict] = None,
) -> AuditLogRecord:
    """A sealed record as the store holds it (no sensitive fields)."""
    record_id = record_id or str(uuid.uuid4())
    retention = event_time + timedelta(days=2190)
    record = AuditLogRecord(
        pk=AuditLogRecord.partition_key(user_id),
        sk=AuditLogRecord.sort_key(event_time, record_id),
        id=record_id,
        timestamp=format_timestamp(event_time),
        event=event,
        action=f"{event} action",
        result=result,
        event_time=event_time,
        date_partition=event_time.astimezone(timezone.utc).date().isoformat(),
        retention_until=format_timestamp(retention),
        ttl=ttl if ttl is not None else int(retention.timestamp()),
        user_id=user_id,
        phi_accessed=phi_accessed,
        patient_ref=patient_ref,
        ip_address=ip_address,
        details=details,
    )
    return record.seal()


def make_token(
    sub: str = "reviewer-1",
    roles: Optional[list[str]] = None,
    issued_at: Optional[float] = None,
    expires_at: Optional[float] = None,
    **claims: Any,
) -> str:
    """Sign a bearer token the way the identity provider would."""
    now = time.time()
    issued_at = now if issued_at is None else issued_at
    payload = {
        "sub": sub,
        "iat": int(issued_at),
        "exp": int(expires_at if expires_at is not None else issued_at + 3600),
        "roles": roles if roles is not None else [],
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class ManualTimer:
    def __init__(self, due: float, seq: int, callback: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Clock that only moves when told to, firing due timers in order."""

    def __init__(self, start: float = 1_800_000_000.0):
        self.now = start
        self.mono = 0.0
        self._timers: list[ManualTimer] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + max(0.0, delay), next(self._seq), callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self._timers.remove(timer)
            self._move_to(max(timer.due, self.now))
            timer.callback()
        self._move_to(target)
        self._timers = [t for t in self._timers if not t.cancelled]

    def _move_to(self, when: float) -> None:
        self.mono += when - self.now
        self.now = when
