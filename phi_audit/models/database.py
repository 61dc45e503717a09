"""
Database Models

SQLAlchemy ORM model for the audit trail. One immutable row per event,
keyed the way a partitioned key-value store would key it:

    pk = USER#{userId} | USER#ANONYMOUS
    sk = LOG#{canonical UTC timestamp}#{id}

Secondary indexes cover date, event type, PHI access (by patient blind
index), user activity and TTL.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from phi_audit.audit.errors import ImmutableRecordError


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class AuditLogRow(Base):
    """
    Audit Log model.

    Immutable audit trail for HIPAA compliance and security monitoring.
    `user_email` and `patient_id` only ever hold ciphertext.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_date", "date_partition", "event_time"),
        Index("ix_audit_event_type", "event", "event_time"),
        Index("ix_audit_phi_access", "patient_ref", "event_time"),
        Index("ix_audit_user_activity", "user_id", "event_time"),
        Index("ix_audit_ttl", "ttl"),
    )

    pk: Mapped[str] = mapped_column(Text, primary_key=True)
    sk: Mapped[str] = mapped_column(Text, primary_key=True)
    id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)

    timestamp: Mapped[str] = mapped_column(Text, nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    result: Mapped[str] = mapped_column(String(20), nullable=False)

    user_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resource: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    phi_accessed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    patient_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    patient_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    date_partition: Mapped[str] = mapped_column(String(10), nullable=False)
    retention_until: Mapped[str] = mapped_column(String(64), nullable=False)
    ttl: Mapped[int] = mapped_column(BigInteger, nullable=False)
    integrity_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<AuditLogRow(id={self.id}, event={self.event}, "
            f"pk={self.pk}, sk={self.sk})>"
        )


@event.listens_for(AuditLogRow, "before_update")
def _reject_update(mapper, connection, target: AuditLogRow) -> None:
    raise ImmutableRecordError(f"Audit record {target.id} is immutable")
