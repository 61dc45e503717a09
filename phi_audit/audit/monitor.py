"""
Suspicious-Activity Monitor

Checks each ingested event (and, periodically, every recently active user)
against a small set of rules. Detections are written back into the audit
trail as SUSPICIOUS_ACTIVITY events; they are never raised as errors.

Rules:
- repeated_auth_failures: failed authentication events in the window
- bulk_phi_access: PHI-access events in the window
- new_network_origin: an IP address never seen before for a known user

Counts come from the audit store. The only thing kept in memory is when
each detection was last emitted, so a detection still waiting in the
outbox is not emitted twice.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from phi_audit.audit.models import (
    AUTH_EVENT_TYPES,
    AuditEvent,
    AuditEventType,
    AuditLogRecord,
    AuditResult,
    format_timestamp,
)
from phi_audit.audit.store import SqlAuditStore
from phi_audit.config import settings
from phi_audit.infra.background import PeriodicTask

logger = logging.getLogger(__name__)


class Rule(str, Enum):
    REPEATED_AUTH_FAILURES = "repeated_auth_failures"
    BULK_PHI_ACCESS = "bulk_phi_access"
    NEW_NETWORK_ORIGIN = "new_network_origin"


@dataclass
class Detection:
    rule: Rule
    user_id: str
    count: int = 0
    trigger_event_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class SuspiciousActivityMonitor:
    """
    Usage:
        monitor = SuspiciousActivityMonitor(store, emit=outbox.put)
        detections = await monitor.observe(record)
    """

    def __init__(
        self,
        store: SqlAuditStore,
        emit: Callable[[AuditEvent], Awaitable[None]],
        window_seconds: Optional[int] = None,
        failed_auth_threshold: Optional[int] = None,
        phi_access_threshold: Optional[int] = None,
    ):
        self.store = store
        self.emit = emit
        self.window = timedelta(seconds=window_seconds or settings.suspicious_window_seconds)
        self.failed_auth_threshold = failed_auth_threshold or settings.failed_auth_threshold
        self.phi_access_threshold = phi_access_threshold or settings.phi_access_threshold
        # Detections emitted but possibly not yet drained into the store
        self._emitted: dict[tuple[str, Rule], datetime] = {}

    async def observe(self, record: AuditLogRecord) -> list[Detection]:
        """Check one stored record. Returns the detections that were emitted."""
        kind = record.event_type
        if kind == AuditEventType.SUSPICIOUS_ACTIVITY or not record.user_id:
            return []

        now = record.event_time
        since = now - self.window
        detections: list[Detection] = []

        if kind in AUTH_EVENT_TYPES and record.result == AuditResult.FAILURE.value:
            detection = await self._check_auth_failures(record.user_id, since, record.id)
            if detection:
                detections.append(detection)

        if record.phi_accessed:
            detection = await self._check_phi_volume(record.user_id, since, record.id)
            if detection:
                detections.append(detection)

        if record.ip_address:
            detection = await self._check_origin(record)
            if detection:
                detections.append(detection)

        return await self._emit_new(detections, now)

    async def sweep(self, now: Optional[datetime] = None) -> list[Detection]:
        """Re-check the windowed rules for every user active in the window."""
        now = now or datetime.now(timezone.utc)
        since = now - self.window
        detections: list[Detection] = []

        for user_id in await self.store.active_users(since):
            for check in (self._check_auth_failures, self._check_phi_volume):
                detection = await check(user_id, since, None)
                if detection:
                    detections.append(detection)

        emitted = await self._emit_new(detections, now)
        if emitted:
            logger.info(f"Monitor sweep emitted {len(emitted)} detections")
        return emitted

    # ==================================
    # Rules
    # ==================================

    async def _check_auth_failures(
        self, user_id: str, since: datetime, trigger_id: Optional[str]
    ) -> Optional[Detection]:
        records = await self.store.recent_for_user(
            user_id, since, events=[kind.value for kind in AUTH_EVENT_TYPES]
        )
        failures = [r for r in records if r.result == AuditResult.FAILURE.value]
        if len(failures) < self.failed_auth_threshold:
            return None
        return Detection(
            rule=Rule.REPEATED_AUTH_FAILURES,
            user_id=user_id,
            count=len(failures),
            trigger_event_id=trigger_id,
        )

    async def _check_phi_volume(
        self, user_id: str, since: datetime, trigger_id: Optional[str]
    ) -> Optional[Detection]:
        records = await self.store.recent_for_user(user_id, since)
        phi = [
            r for r in records
            if r.phi_accessed and r.event_type != AuditEventType.SUSPICIOUS_ACTIVITY
        ]
        if len(phi) < self.phi_access_threshold:
            return None
        return Detection(
            rule=Rule.BULK_PHI_ACCESS,
            user_id=user_id,
            count=len(phi),
            trigger_event_id=trigger_id,
        )

    async def _check_origin(self, record: AuditLogRecord) -> Optional[Detection]:
        if not await self.store.has_known_origin(record.user_id, exclude_id=record.id):
            return None
        if await self.store.has_prior_origin(record.user_id, record.ip_address, exclude_id=record.id):
            return None
        return Detection(
            rule=Rule.NEW_NETWORK_ORIGIN,
            user_id=record.user_id,
            count=1,
            trigger_event_id=record.id,
            details={"ipAddress": record.ip_address},
        )

    # ==================================
    # Emission
    # ==================================

    async def _already_flagged(self, detection: Detection, now: datetime) -> bool:
        since = now - self.window

        emitted_at = self._emitted.get((detection.user_id, detection.rule))
        if emitted_at is not None and emitted_at >= since:
            return True

        existing = await self.store.recent_for_user(
            detection.user_id, since, events=[AuditEventType.SUSPICIOUS_ACTIVITY.value]
        )
        return any((r.details or {}).get("rule") == detection.rule.value for r in existing)

    async def _emit_new(self, detections: list[Detection], now: datetime) -> list[Detection]:
        emitted = []
        for detection in detections:
            if await self._already_flagged(detection, now):
                continue

            await self.emit(self._to_event(detection, now))
            self._emitted[(detection.user_id, detection.rule)] = now
            logger.warning(
                f"Suspicious activity: rule={detection.rule.value} "
                f"user={detection.user_id} count={detection.count}"
            )
            emitted.append(detection)

        self._forget_before(now - self.window)
        return emitted

    def _forget_before(self, cutoff: datetime) -> None:
        for key in [k for k, at in self._emitted.items() if at < cutoff]:
            del self._emitted[key]

    def _to_event(self, detection: Detection, now: datetime) -> AuditEvent:
        details = {
            "rule": detection.rule.value,
            "count": detection.count,
            "windowSeconds": int(self.window.total_seconds()),
            "triggerEventId": detection.trigger_event_id,
            **detection.details,
        }
        return AuditEvent(
            id=str(uuid.uuid4()),
            timestamp=format_timestamp(now),
            user_id=detection.user_id,
            event=AuditEventType.SUSPICIOUS_ACTIVITY.value,
            resource="audit_log",
            action=f"Suspicious activity detected: {detection.rule.value}",
            result=AuditResult.WARNING.value,
            details={k: v for k, v in details.items() if v is not None},
        )


class MonitorSweeper(PeriodicTask):
    """Runs the monitor's periodic sweep."""

    name = "monitor-sweeper"

    def __init__(self, monitor: SuspiciousActivityMonitor, interval_seconds: Optional[float] = None):
        super().__init__(interval_seconds or settings.monitor_sweep_interval_seconds)
        self.monitor = monitor

    async def run_once(self) -> None:
        await self.monitor.sweep()
