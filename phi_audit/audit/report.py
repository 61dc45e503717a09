"""
Audit report generation.

Summarizes the audit trail over a date range for compliance review.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Optional

from phi_audit.audit.errors import AuditValidationError
from phi_audit.audit.models import AuditLogRecord, format_timestamp
from phi_audit.audit.store import IndexName, SqlAuditStore
from phi_audit.config import settings

logger = logging.getLogger(__name__)


@dataclass
class AuditReport:
    start: datetime
    end: datetime
    total_events: int = 0
    phi_access: int = 0
    security_events: int = 0
    unique_users: int = 0
    event_breakdown: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "startDate": format_timestamp(self.start),
            "endDate": format_timestamp(self.end),
            "totalEvents": self.total_events,
            "phiAccess": self.phi_access,
            "securityEvents": self.security_events,
            "uniqueUsers": self.unique_users,
            "eventBreakdown": self.event_breakdown,
        }


async def iter_records(
    store: SqlAuditStore,
    start: datetime,
    end: datetime,
    page_size: Optional[int] = None,
) -> AsyncIterator[AuditLogRecord]:
    """Walk every record in [start, end] through the date index, newest first."""
    page_size = page_size or settings.audit_query_max_limit
    cursor = None
    while True:
        page = await store.query(
            IndexName.DATE, start=start, end=end, limit=page_size, cursor=cursor
        )
        for record in page.items:
            yield record
        if not page.cursor:
            break
        cursor = page.cursor


class AuditReportService:
    """Counts events by kind, PHI access, failures and distinct users."""

    def __init__(self, store: SqlAuditStore):
        self.store = store

    async def generate(self, start: datetime, end: datetime) -> AuditReport:
        if start > end:
            raise AuditValidationError("startDate must not be after endDate", field="startDate")

        report = AuditReport(start=start, end=end)
        breakdown: Counter[str] = Counter()
        users: set[str] = set()

        async for record in iter_records(self.store, start, end):
            report.total_events += 1
            if record.phi_accessed:
                report.phi_access += 1
            if record.result == "failure":
                report.security_events += 1
            if record.user_id:
                users.add(record.user_id)
            breakdown[record.event] += 1

        report.unique_users = len(users)
        report.event_breakdown = dict(breakdown)
        logger.info(
            f"Generated audit report {report.start.date()}..{report.end.date()}: "
            f"{report.total_events} events"
        )
        return report
