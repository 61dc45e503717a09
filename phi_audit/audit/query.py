"""
Audit Query Service

Reads the audit trail for authorized reviewers. Sensitive fields are only
decrypted for reviewers with decrypt rights. Any query that returns PHI is
itself audited as PHI_VIEW before results are handed back.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from phi_audit.audit.crypto import CryptoProvider
from phi_audit.audit.errors import AuditUnauthorized, AuditValidationError
from phi_audit.audit.ingestion import AuditIngestionService
from phi_audit.audit.models import (
    AuditEvent,
    AuditEventType,
    AuditLogRecord,
    IngestionContext,
    format_timestamp,
)
from phi_audit.audit.store import IndexName, SqlAuditStore
from phi_audit.config import settings

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)


@dataclass
class AuditQuery:
    """Filter set for an audit query."""

    user_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    event_type: Optional[str] = None
    patient_id: Optional[str] = None
    phi_only: bool = False
    limit: int = 100
    cursor: Optional[str] = None


@dataclass
class Reviewer:
    """The principal running a query, with the rights the policy layer granted."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    can_read: bool = False
    can_decrypt: bool = False
    session_id: Optional[str] = None

    @property
    def role(self) -> Optional[str]:
        return ",".join(sorted(self.roles)) or None

    @classmethod
    def for_roles(
        cls,
        user_id: str,
        roles: Iterable[str],
        session_id: Optional[str] = None,
    ) -> "Reviewer":
        granted = frozenset(roles)
        return cls(
            user_id=user_id,
            roles=granted,
            can_read=bool(granted & settings.audit_reader_roles_set),
            can_decrypt=bool(granted & settings.audit_decrypt_roles_set),
            session_id=session_id,
        )


@dataclass
class QueryResult:
    logs: list[dict[str, Any]]
    cursor: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.logs)

    def to_dict(self) -> dict[str, Any]:
        return {"logs": self.logs, "count": self.count, "cursor": self.cursor}


def choose_index(query: AuditQuery) -> IndexName:
    """Pick the access path that serves the most selective filter."""
    if query.patient_id:
        return IndexName.PHI_ACCESS
    if query.user_id:
        return IndexName.PRIMARY
    if query.event_type:
        return IndexName.EVENT_TYPE
    return IndexName.DATE


class AuditQueryService:
    """
    Usage:
        service = AuditQueryService(store, crypto, ingestion)
        result = await service.run(reviewer, AuditQuery(user_id="u1"))
    """

    def __init__(
        self,
        store: SqlAuditStore,
        crypto: CryptoProvider,
        ingestion: AuditIngestionService,
        max_limit: Optional[int] = None,
    ):
        self.store = store
        self.crypto = crypto
        self.ingestion = ingestion
        self.max_limit = max_limit or settings.audit_query_max_limit

    def _normalize(self, query: AuditQuery, now: datetime) -> AuditQuery:
        if query.limit < 1:
            raise AuditValidationError("limit must be a positive integer", field="limit")
        if query.start_date and query.end_date and query.start_date > query.end_date:
            raise AuditValidationError("startDate must not be after endDate", field="startDate")

        start, end = query.start_date, query.end_date
        if choose_index(query) == IndexName.DATE:
            if end is None:
                end = start + DEFAULT_WINDOW if start else now
            if start is None:
                start = end - DEFAULT_WINDOW

        return AuditQuery(
            user_id=query.user_id,
            start_date=start,
            end_date=end,
            event_type=AuditEventType.stored_name(query.event_type) if query.event_type else None,
            patient_id=query.patient_id,
            phi_only=query.phi_only,
            limit=min(query.limit, self.max_limit),
            cursor=query.cursor,
        )

    def _key_and_filters(
        self, index: IndexName, query: AuditQuery
    ) -> tuple[Optional[str], dict[str, Any]]:
        filters: dict[str, Any] = {}
        key: Optional[str] = None

        if index == IndexName.PHI_ACCESS:
            key = self.crypto.blind_index(query.patient_id)
            if query.user_id:
                filters["user_id"] = query.user_id
        elif index == IndexName.PRIMARY:
            key = query.user_id
        elif index == IndexName.EVENT_TYPE:
            key = query.event_type

        if query.event_type and index != IndexName.EVENT_TYPE:
            filters["event"] = query.event_type
        if query.phi_only:
            filters["phi_accessed"] = True
        return key, filters

    async def _render(self, record: AuditLogRecord, decrypt: bool) -> dict[str, Any]:
        integrity_valid = record.verify_integrity()
        if not integrity_valid:
            logger.error(f"Integrity check failed for audit record {record.id}")

        data = record.to_api_dict()
        if decrypt:
            if record.user_email:
                data["userEmail"] = await self.crypto.decrypt("userEmail", record.user_email)
            if record.patient_id:
                data["patientId"] = await self.crypto.decrypt("patientId", record.patient_id)
        data["integrityValid"] = integrity_valid
        return data

    async def run(
        self,
        reviewer: Reviewer,
        query: AuditQuery,
        context: Optional[IngestionContext] = None,
        now: Optional[datetime] = None,
    ) -> QueryResult:
        """
        Run a query for a reviewer.

        Raises:
            AuditUnauthorized: Before any store access, if the reviewer may not read
            AuditValidationError: On a malformed filter or cursor
        """
        if not reviewer.can_read:
            logger.warning(f"Audit query denied for user={reviewer.user_id}")
            raise AuditUnauthorized()

        now = now or datetime.now(timezone.utc)
        query = self._normalize(query, now)
        index = choose_index(query)
        key, filters = self._key_and_filters(index, query)

        page = await self.store.query(
            index,
            key=key,
            start=query.start_date,
            end=query.end_date,
            filters=filters,
            limit=query.limit,
            cursor=query.cursor,
        )

        records = sorted(page.items, key=lambda r: (r.event_time, r.sk), reverse=True)

        await self._audit_phi_view(reviewer, records, context, now)

        logs = [await self._render(r, reviewer.can_decrypt) for r in records]
        logger.info(
            f"Audit query by user={reviewer.user_id} via {index.value} index "
            f"returned {len(logs)} records"
        )
        return QueryResult(logs=logs, cursor=page.cursor)

    async def _audit_phi_view(
        self,
        reviewer: Reviewer,
        records: list[AuditLogRecord],
        context: Optional[IngestionContext],
        now: datetime,
    ) -> None:
        """Record one PHI_VIEW per distinct patient among the results."""
        by_patient: dict[str, list[AuditLogRecord]] = {}
        for record in records:
            if record.phi_accessed and record.patient_ref:
                by_patient.setdefault(record.patient_ref, []).append(record)

        if not by_patient:
            return

        # Stored ciphertext and blind index carry over as-is; nothing is decrypted
        events = []
        sealed: dict[str, tuple[str, str]] = {}
        for patient_ref, group in by_patient.items():
            sealed_id = group[0].patient_id
            events.append(
                AuditEvent(
                    id=str(uuid.uuid4()),
                    timestamp=format_timestamp(now),
                    user_id=reviewer.user_id,
                    user_role=reviewer.role,
                    event=AuditEventType.PHI_VIEW.value,
                    resource="audit_log",
                    action="Viewed audit records containing PHI",
                    result="success",
                    phi_accessed=True,
                    patient_id=sealed_id,
                    session_id=reviewer.session_id,
                    details={
                        "recordIds": [r.id for r in group],
                        "decrypted": reviewer.can_decrypt,
                    },
                )
            )
            sealed[events[-1].id] = (sealed_id, patient_ref)

        limit = self.ingestion.batch_limit
        for start in range(0, len(events), limit):
            await self.ingestion.ingest_batch(
                events[start:start + limit], context, sealed_patients=sealed
            )
