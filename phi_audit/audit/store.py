"""
Audit Store

Partitioned, insert-only audit table with secondary indexes, realized on
SQLAlchemy async. Records are never updated; retention is enforced by the
store's own sweeper, not by ingestion or query code.
"""

import asyncio
import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import and_, delete, func, or_, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phi_audit.audit.errors import AuditValidationError
from phi_audit.audit.models import AuditLogRecord, QueryPage
from phi_audit.config import settings
from phi_audit.infra.background import PeriodicTask
from phi_audit.models.database import AuditLogRow

logger = logging.getLogger(__name__)


class IndexName(str, Enum):
    """Access paths into the audit table."""

    PRIMARY = "primary"          # pk = USER#{userId}
    DATE = "date"                # ix_audit_date
    EVENT_TYPE = "event_type"    # ix_audit_event_type
    PHI_ACCESS = "phi_access"    # ix_audit_phi_access (patient blind index)


_RECORD_COLUMNS = (
    "pk", "sk", "id", "timestamp", "event", "action", "result", "event_time",
    "date_partition", "retention_until", "ttl", "user_id", "user_email",
    "user_role", "resource", "resource_id", "ip_address", "user_agent",
    "details", "phi_accessed", "patient_id", "patient_ref", "session_id",
    "integrity_hash",
)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def record_to_row_values(record: AuditLogRecord) -> dict[str, Any]:
    values = {name: getattr(record, name) for name in _RECORD_COLUMNS}
    values["event_time"] = _as_utc(record.event_time)
    return values


def row_to_record(row: AuditLogRow) -> AuditLogRecord:
    values = {name: getattr(row, name) for name in _RECORD_COLUMNS}
    values["event_time"] = _as_utc(row.event_time)
    return AuditLogRecord(**values)


def encode_cursor(record: AuditLogRecord) -> str:
    """Opaque pagination token for the position after `record`."""
    raw = json.dumps({"sk": record.sk, "pk": record.pk}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[str, str]:
    """
    Raises:
        AuditValidationError: If the token was not produced by encode_cursor
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()))
        return str(data["sk"]), str(data["pk"])
    except (binascii.Error, ValueError, KeyError, TypeError) as e:
        raise AuditValidationError("Invalid pagination cursor", field="cursor") from e


class SqlAuditStore:
    """
    Audit store on a SQL database.

    Usage:
        store = SqlAuditStore()
        await store.put(record)
        page = await store.query(IndexName.PRIMARY, key="u1", limit=50)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        timeout_seconds: Optional[float] = None,
        batch_limit: Optional[int] = None,
    ):
        if session_factory is None:
            from phi_audit.infra.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory
        self._timeout = timeout_seconds or settings.audit_store_timeout_seconds
        self._batch_limit = batch_limit or settings.audit_batch_limit

    # ==================================
    # Writes
    # ==================================

    def _insert_ignore(self, session: AsyncSession):
        """INSERT that skips rows whose key or id already exists."""
        dialect = session.bind.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(AuditLogRow).on_conflict_do_nothing()
        if dialect == "sqlite":
            return sqlite.insert(AuditLogRow).on_conflict_do_nothing()
        raise RuntimeError(f"Unsupported audit store dialect: {dialect}")

    async def _write(self, records: list[AuditLogRecord]) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                stmt = self._insert_ignore(session)
                await session.execute(stmt, [record_to_row_values(r) for r in records])

    async def put(self, record: AuditLogRecord) -> None:
        """
        Write one record atomically. Re-writing an existing id is a no-op.

        Raises:
            Any database or timeout error; the caller owns the retry budget.
        """
        await asyncio.wait_for(self._write([record]), timeout=self._timeout)
        logger.debug(f"Stored audit record {record.id}")

    async def batch_put(self, records: list[AuditLogRecord]) -> list[AuditLogRecord]:
        """
        Write records in chunks of the batch limit, one transaction per chunk.

        When a chunk fails its items are retried one at a time so that only
        the items that really fail are reported.

        Returns:
            Records that were not written
        """
        unprocessed: list[AuditLogRecord] = []

        for start in range(0, len(records), self._batch_limit):
            chunk = records[start:start + self._batch_limit]
            try:
                await asyncio.wait_for(self._write(chunk), timeout=self._timeout)
                continue
            except Exception as e:
                logger.warning(f"Batch chunk of {len(chunk)} failed, retrying items: {e}")

            for record in chunk:
                try:
                    await self.put(record)
                except Exception as e:
                    logger.error(f"Failed to store audit record {record.id}: {e}")
                    unprocessed.append(record)

        return unprocessed

    # ==================================
    # Reads
    # ==================================

    async def get(self, event_id: str) -> Optional[AuditLogRecord]:
        async with self._session_factory() as session:
            row = (
                await session.execute(select(AuditLogRow).where(AuditLogRow.id == event_id))
            ).scalar_one_or_none()
        return row_to_record(row) if row else None

    async def query(
        self,
        index: IndexName,
        key: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        filters: Optional[dict[str, Any]] = None,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> QueryPage:
        """
        Read one page through an index, newest first.

        Args:
            index: Access path
            key: Index key (user id, event type, patient blind index).
                 Ignored for the date index.
            start: Inclusive lower bound on event time
            end: Inclusive upper bound on event time
            filters: Extra equality filters on record fields
            limit: Page size
            cursor: Token from a previous page

        Returns:
            QueryPage with a cursor when more records remain
        """
        stmt = select(AuditLogRow)

        if index == IndexName.PRIMARY:
            stmt = stmt.where(AuditLogRow.pk == AuditLogRecord.partition_key(key))
        elif index == IndexName.EVENT_TYPE:
            stmt = stmt.where(AuditLogRow.event == key)
        elif index == IndexName.PHI_ACCESS:
            stmt = stmt.where(AuditLogRow.patient_ref == key)
        elif index == IndexName.DATE:
            if start is not None:
                stmt = stmt.where(AuditLogRow.date_partition >= _as_utc(start).date().isoformat())
            if end is not None:
                stmt = stmt.where(AuditLogRow.date_partition <= _as_utc(end).date().isoformat())

        if start is not None:
            stmt = stmt.where(AuditLogRow.event_time >= _as_utc(start))
        if end is not None:
            stmt = stmt.where(AuditLogRow.event_time <= _as_utc(end))

        for name, value in (filters or {}).items():
            stmt = stmt.where(getattr(AuditLogRow, name) == value)

        if cursor:
            last_sk, last_pk = decode_cursor(cursor)
            stmt = stmt.where(
                or_(
                    AuditLogRow.sk < last_sk,
                    and_(AuditLogRow.sk == last_sk, AuditLogRow.pk < last_pk),
                )
            )

        # Sort keys embed the canonical UTC timestamp, so sk order is time order
        stmt = stmt.order_by(AuditLogRow.sk.desc(), AuditLogRow.pk.desc()).limit(limit + 1)

        async with self._session_factory() as session:
            rows = (
                await asyncio.wait_for(session.execute(stmt), timeout=self._timeout)
            ).scalars().all()

        items = [row_to_record(row) for row in rows[:limit]]
        next_cursor = encode_cursor(items[-1]) if len(rows) > limit and items else None
        return QueryPage(items=items, cursor=next_cursor)

    async def recent_for_user(
        self,
        user_id: str,
        since: datetime,
        events: Optional[list[str]] = None,
        limit: int = 500,
    ) -> list[AuditLogRecord]:
        """Records in a user's partition since `since`, newest first."""
        stmt = select(AuditLogRow).where(
            AuditLogRow.pk == AuditLogRecord.partition_key(user_id),
            AuditLogRow.event_time >= _as_utc(since),
        )
        if events:
            stmt = stmt.where(AuditLogRow.event.in_(events))
        stmt = stmt.order_by(AuditLogRow.sk.desc()).limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [row_to_record(row) for row in rows]

    async def has_known_origin(self, user_id: str, exclude_id: Optional[str] = None) -> bool:
        """True when any record other than `exclude_id` carries an IP address for the user."""
        stmt = select(AuditLogRow.id).where(
            AuditLogRow.pk == AuditLogRecord.partition_key(user_id),
            AuditLogRow.ip_address.is_not(None),
        )
        if exclude_id:
            stmt = stmt.where(AuditLogRow.id != exclude_id)

        async with self._session_factory() as session:
            found = (await session.execute(stmt.limit(1))).first()
        return found is not None

    async def has_prior_origin(
        self,
        user_id: str,
        ip_address: str,
        exclude_id: Optional[str] = None,
    ) -> bool:
        """True when the user has been seen from `ip_address` before."""
        stmt = select(AuditLogRow.id).where(
            AuditLogRow.pk == AuditLogRecord.partition_key(user_id),
            AuditLogRow.ip_address == ip_address,
        )
        if exclude_id:
            stmt = stmt.where(AuditLogRow.id != exclude_id)

        async with self._session_factory() as session:
            found = (await session.execute(stmt.limit(1))).first()
        return found is not None

    async def active_users(self, since: datetime) -> list[str]:
        """Distinct user ids with records since `since`."""
        stmt = (
            select(AuditLogRow.user_id)
            .where(AuditLogRow.event_time >= _as_utc(since), AuditLogRow.user_id.is_not(None))
            .distinct()
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # ==================================
    # Retention
    # ==================================

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete records whose ttl has elapsed. Returns the number removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = int(now.timestamp())

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(AuditLogRow).where(AuditLogRow.ttl <= cutoff)
                )
        purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} audit records past retention")
        return purged

    async def count(self) -> int:
        async with self._session_factory() as session:
            return (await session.execute(select(func.count()).select_from(AuditLogRow))).scalar_one()

    async def health_check(self) -> bool:
        try:
            async with self._session_factory() as session:
                await asyncio.wait_for(session.execute(text("SELECT 1")), timeout=self._timeout)
            return True
        except Exception as e:
            logger.error(f"Audit store health check failed: {e}")
            return False


class RetentionSweeper(PeriodicTask):
    """Deletes records past their ttl on a fixed interval."""

    name = "retention-sweeper"

    def __init__(self, store: SqlAuditStore, interval_seconds: Optional[float] = None):
        super().__init__(interval_seconds or settings.retention_sweep_interval_seconds)
        self.store = store

    async def run_once(self) -> None:
        await self.store.purge_expired()


# Singleton
_store: Optional[SqlAuditStore] = None


def get_audit_store() -> SqlAuditStore:
    """Get singleton audit store on the application engine."""
    global _store
    if _store is None:
        _store = SqlAuditStore()
    return _store
