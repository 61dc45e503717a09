"""
Audit Ingestion Service

Validates, enriches, encrypts and persists audit events, one at a time or
in bounded batches. Every accepted event is handed to the suspicious
activity monitor in the background.

Failures are returned to the caller, never swallowed:
- AuditValidationError: nothing was written
- EncryptionFailure: nothing was written, plaintext never left the process
- StoreWriteFailure: lists which ids were written and which were not
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from pydantic.alias_generators import to_camel
from sqlalchemy.exc import InterfaceError, OperationalError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from phi_audit.audit.crypto import CryptoProvider
from phi_audit.audit.errors import AuditValidationError, EncryptionFailure, StoreWriteFailure
from phi_audit.audit.models import (
    AuditEvent,
    AuditEventType,
    AuditLogRecord,
    AuditResult,
    IngestionContext,
    format_timestamp,
    parse_timestamp,
)
from phi_audit.audit.store import SqlAuditStore
from phi_audit.config import settings

if TYPE_CHECKING:
    from phi_audit.audit.monitor import SuspiciousActivityMonitor

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "timestamp", "event", "action")

# Store errors worth another attempt; anything else fails on the first try
TRANSIENT_STORE_ERRORS = (OperationalError, InterfaceError, TimeoutError, ConnectionError)

# (patient_id ciphertext, patient_ref) copied from a stored record
SealedPatient = tuple[str, str]


class _UnprocessedItems(Exception):
    """Some batch items are still unwritten; try those again."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditIngestionService:
    """
    Entry point for every audit write.

    Usage:
        service = AuditIngestionService(store, crypto)
        event_id = await service.ingest(event, IngestionContext(source_ip="10.0.0.1"))
    """

    def __init__(
        self,
        store: SqlAuditStore,
        crypto: CryptoProvider,
        monitor: Optional["SuspiciousActivityMonitor"] = None,
        retention_days: Optional[int] = None,
        batch_limit: Optional[int] = None,
        max_attempts: Optional[int] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.crypto = crypto
        self.monitor = monitor
        self.retention_days = retention_days or settings.audit_retention_days
        self.batch_limit = batch_limit or settings.audit_batch_limit
        self.max_attempts = max_attempts or settings.audit_store_max_attempts
        self._now = now
        self._tasks: set[asyncio.Task] = set()

    # ==================================
    # Validation
    # ==================================

    def validate(self, event: AuditEvent, in_batch: bool = False) -> None:
        """
        Check an event before any side effect.

        Raises:
            AuditValidationError: Naming the offending field (and entry id in batches)
        """
        entry_id = event.id if in_batch else None

        for name in REQUIRED_FIELDS:
            value = getattr(event, name)
            if value is None or not str(value).strip():
                raise AuditValidationError(
                    f"Missing required field: {name}", field=name, entry_id=entry_id
                )

        try:
            parse_timestamp(event.timestamp)
        except ValueError:
            raise AuditValidationError(
                "timestamp must be a valid ISO-8601 instant",
                field="timestamp",
                entry_id=entry_id,
            )

        try:
            AuditResult(event.result)
        except ValueError:
            raise AuditValidationError(
                "result must be one of success, failure, warning",
                field="result",
                entry_id=entry_id,
            )

        if event.phi_accessed and not (event.patient_id and event.patient_id.strip()):
            raise AuditValidationError(
                "patientId is required when phiAccessed is true",
                field="patientId",
                entry_id=entry_id,
            )

    # ==================================
    # Record construction
    # ==================================

    async def _seal_field(self, name: str, value: Optional[str], event_id: str) -> Optional[str]:
        if not value:
            return None
        try:
            return await self.crypto.encrypt(name, value)
        except EncryptionFailure as e:
            e.field = to_camel(name)
            e.entry_id = event_id
            raise

    async def build_record(
        self,
        event: AuditEvent,
        context: Optional[IngestionContext] = None,
        sealed_patient: Optional[SealedPatient] = None,
    ) -> AuditLogRecord:
        """
        Enrich, encrypt and derive the stored form of a validated event.

        `sealed_patient` carries an already stored (ciphertext, blind index)
        pair; the event then holds that ciphertext as its patientId and
        nothing is decrypted or sealed again.

        Raises:
            EncryptionFailure: If a sensitive field could not be sealed
        """
        context = context or IngestionContext()
        event_time = parse_timestamp(event.timestamp)
        retention_until = self._now() + timedelta(days=self.retention_days)

        user_email = await self._seal_field("user_email", event.user_email, event.id)
        if sealed_patient is not None:
            patient_id, patient_ref = sealed_patient
        else:
            patient_id = await self._seal_field("patient_id", event.patient_id, event.id)
            patient_ref = self.crypto.blind_index(event.patient_id) if event.patient_id else None

        record = AuditLogRecord(
            pk=AuditLogRecord.partition_key(event.user_id),
            sk=AuditLogRecord.sort_key(event_time, event.id),
            id=event.id,
            timestamp=event.timestamp,
            event=AuditEventType.stored_name(event.event),
            action=event.action,
            result=event.result,
            event_time=event_time,
            date_partition=event_time.date().isoformat(),
            retention_until=format_timestamp(retention_until),
            ttl=int(retention_until.timestamp()),
            user_id=event.user_id or None,
            user_email=user_email,
            user_role=event.user_role,
            resource=event.resource,
            resource_id=event.resource_id,
            ip_address=event.ip_address or context.source_ip,
            user_agent=event.user_agent or context.user_agent,
            details=event.details,
            phi_accessed=event.phi_accessed,
            patient_id=patient_id,
            patient_ref=patient_ref,
            session_id=event.session_id or context.correlation_id,
        )
        return record.seal()

    # ==================================
    # Ingestion
    # ==================================

    def _retrying(self, *exception_types) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.05, max=1.0),
            retry=retry_if_exception_type(exception_types),
            reraise=True,
        )

    async def ingest(
        self,
        event: AuditEvent,
        context: Optional[IngestionContext] = None,
    ) -> str:
        """
        Validate and persist one event.

        Returns:
            The record id
        """
        try:
            self.validate(event)
        except AuditValidationError as e:
            logger.warning(f"Rejected audit event id={event.id}: {e.message}")
            raise

        record = await self.build_record(event, context)

        try:
            async for attempt in self._retrying(*TRANSIENT_STORE_ERRORS):
                with attempt:
                    await self.store.put(record)
        except Exception as e:
            logger.error(f"Store write failed for audit event {record.id}: {e}")
            raise StoreWriteFailure(
                "Audit record could not be stored", succeeded=[], failed=[record.id]
            ) from e

        logger.debug(f"Ingested audit event {record.id} ({record.event})")
        self._hand_off([record])
        return record.id

    async def ingest_batch(
        self,
        events: list[AuditEvent],
        context: Optional[IngestionContext] = None,
        sealed_patients: Optional[dict[str, SealedPatient]] = None,
    ) -> list[str]:
        """
        Validate and persist a batch. An invalid entry rejects the whole batch.

        Returns:
            Record ids in submission order
        """
        if not events:
            raise AuditValidationError("Batch must contain at least one event", field="logs")
        if len(events) > self.batch_limit:
            raise AuditValidationError(
                f"Batch size {len(events)} exceeds the limit of {self.batch_limit}",
                field="logs",
            )

        try:
            for event in events:
                self.validate(event, in_batch=True)
        except AuditValidationError as e:
            logger.warning(f"Rejected audit batch at entry={e.entry_id}: {e.message}")
            raise

        sealed_patients = sealed_patients or {}
        records = [
            await self.build_record(event, context, sealed_patients.get(event.id))
            for event in events
        ]

        pending = records
        try:
            async for attempt in self._retrying(_UnprocessedItems):
                with attempt:
                    pending = await self.store.batch_put(pending)
                    if pending:
                        raise _UnprocessedItems(f"{len(pending)} records unwritten")
        except _UnprocessedItems:
            failed = {r.id for r in pending}
            succeeded = [r.id for r in records if r.id not in failed]
            logger.error(
                f"Audit batch partially failed: {len(succeeded)} stored, {len(failed)} failed"
            )
            raise StoreWriteFailure(
                "Some audit records could not be stored",
                succeeded=succeeded,
                failed=[r.id for r in records if r.id in failed],
            )

        logger.debug(f"Ingested audit batch of {len(records)}")
        self._hand_off(records)
        return [r.id for r in records]

    # ==================================
    # Monitor hand-off
    # ==================================

    def _hand_off(self, records: list[AuditLogRecord]) -> None:
        if self.monitor is None:
            return
        task = asyncio.create_task(self._observe(records))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _observe(self, records: list[AuditLogRecord]) -> None:
        for record in records:
            try:
                await self.monitor.observe(record)
            except Exception as e:
                logger.error(f"Suspicious-activity check failed for {record.id}: {e}")

    async def wait_idle(self) -> None:
        """Wait for every pending monitor hand-off to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
