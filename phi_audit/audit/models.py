"""
Audit data models.

AuditEvent is what callers submit; AuditLogRecord is what the store holds.
Wire names are camelCase to match the ingestion and query APIs.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# ==================================
# Enums
# ==================================

class AuditEventType(str, Enum):
    """Known audit event kinds.

    The wire value stays an open string so future producers are never
    rejected; anything not listed here parses to UNKNOWN.
    """

    # Authentication Events
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    AUTH_ATTEMPT = "AUTH_ATTEMPT"
    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTH_FAILURE = "AUTH_FAILURE"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    SESSION_EXTENDED = "SESSION_EXTENDED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    MFA_CHALLENGE = "MFA_CHALLENGE"

    # PHI Access Events
    PHI_VIEW = "PHI_VIEW"
    PHI_CREATE = "PHI_CREATE"
    PHI_UPDATE = "PHI_UPDATE"
    PHI_DELETE = "PHI_DELETE"
    PHI_EXPORT = "PHI_EXPORT"
    PHI_PRINT = "PHI_PRINT"

    # Assessment Events
    ASSESSMENT_START = "ASSESSMENT_START"
    ASSESSMENT_COMPLETE = "ASSESSMENT_COMPLETE"
    ASSESSMENT_VIEW = "ASSESSMENT_VIEW"

    # Crisis Events
    CRISIS_ALERT = "CRISIS_ALERT"
    CRISIS_ACKNOWLEDGED = "CRISIS_ACKNOWLEDGED"
    CRISIS_ESCALATED = "CRISIS_ESCALATED"

    # Provider Actions
    PATIENT_ASSIGNED = "PATIENT_ASSIGNED"
    PATIENT_DISCHARGED = "PATIENT_DISCHARGED"
    CARE_PLAN_CREATED = "CARE_PLAN_CREATED"
    CARE_PLAN_UPDATED = "CARE_PLAN_UPDATED"

    # Security Events
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"

    # System Events
    SYSTEM_ERROR = "SYSTEM_ERROR"
    DATA_INTEGRITY_CHECK = "DATA_INTEGRITY_CHECK"
    BACKUP_CREATED = "BACKUP_CREATED"

    # Anything a newer producer sends that this service does not know yet
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AuditEventType":
        """Map a wire string to a known kind, or UNKNOWN."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.UNKNOWN

    @classmethod
    def stored_name(cls, value: str) -> str:
        """Stored spelling of a kind: the enum value when known, else the trimmed wire string."""
        kind = cls.parse(value)
        return value.strip() if kind == cls.UNKNOWN else kind.value


# Kinds that count towards repeated authentication failures
AUTH_EVENT_TYPES = frozenset({
    AuditEventType.LOGIN,
    AuditEventType.AUTH_ATTEMPT,
    AuditEventType.AUTH_FAILURE,
    AuditEventType.MFA_CHALLENGE,
    AuditEventType.PASSWORD_CHANGE,
})

PHI_EVENT_TYPES = frozenset({
    AuditEventType.PHI_VIEW,
    AuditEventType.PHI_CREATE,
    AuditEventType.PHI_UPDATE,
    AuditEventType.PHI_DELETE,
    AuditEventType.PHI_EXPORT,
    AuditEventType.PHI_PRINT,
})


class AuditResult(str, Enum):
    """Outcome of the audited action."""

    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


# Sensitive fields are sealed by the crypto provider before storage
SENSITIVE_FIELDS = ("user_email", "patient_id")

ANONYMOUS_PARTITION = "USER#ANONYMOUS"


# ==================================
# Timestamp helpers
# ==================================

def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 instant. Naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a valid ISO-8601 instant.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("timestamp must be a non-empty string")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Canonical UTC form used in sort keys and derived fields."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ==================================
# Input model
# ==================================

class AuditEvent(BaseModel):
    """An audit event as submitted by a caller.

    Fields are deliberately lenient here; the ingestion service performs
    the validation so that failures come back as VALIDATION_ERROR with the
    offending field named.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: Optional[str] = None
    timestamp: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_role: Optional[str] = None
    event: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[str] = None
    result: str = AuditResult.SUCCESS.value
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    phi_accessed: bool = False
    patient_id: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def event_type(self) -> AuditEventType:
        return AuditEventType.parse(self.event)


@dataclass
class IngestionContext:
    """Transport metadata used to enrich events that omit it."""

    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None


# ==================================
# Persisted record
# ==================================

@dataclass
class AuditLogRecord:
    """Immutable persisted form of an audit event.

    `user_email` and `patient_id` hold ciphertext. `patient_ref` is the
    keyed hash used by the PHI-access index.
    """

    pk: str
    sk: str
    id: str
    timestamp: str
    event: str
    action: str
    result: str
    event_time: datetime
    date_partition: str
    retention_until: str
    ttl: int
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_role: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    phi_accessed: bool = False
    patient_id: Optional[str] = None
    patient_ref: Optional[str] = None
    session_id: Optional[str] = None
    integrity_hash: str = ""

    @property
    def event_type(self) -> AuditEventType:
        return AuditEventType.parse(self.event)

    @staticmethod
    def partition_key(user_id: Optional[str]) -> str:
        return f"USER#{user_id}" if user_id else ANONYMOUS_PARTITION

    @staticmethod
    def sort_key(event_time: datetime, event_id: str) -> str:
        return f"LOG#{format_timestamp(event_time)}#{event_id}"

    def canonical(self) -> dict[str, Any]:
        """Stored fields that the integrity hash covers."""
        data = asdict(self)
        data.pop("integrity_hash")
        data["event_time"] = format_timestamp(self.event_time)
        return data

    def compute_integrity_hash(self) -> str:
        """SHA-256 over the canonical stored form."""
        content = json.dumps(self.canonical(), sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()

    def seal(self) -> "AuditLogRecord":
        """Return a copy with its integrity hash set."""
        sealed = replace(self)
        sealed.integrity_hash = sealed.compute_integrity_hash()
        return sealed

    def verify_integrity(self) -> bool:
        return bool(self.integrity_hash) and self.integrity_hash == self.compute_integrity_hash()

    def to_api_dict(self) -> dict[str, Any]:
        """Render with camelCase wire names, omitting empty optionals."""
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "userId": self.user_id,
            "userEmail": self.user_email,
            "userRole": self.user_role,
            "event": self.event,
            "resource": self.resource,
            "resourceId": self.resource_id,
            "action": self.action,
            "result": self.result,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "details": self.details,
            "phiAccessed": self.phi_accessed,
            "patientId": self.patient_id,
            "sessionId": self.session_id,
            "retentionUntil": self.retention_until,
            "datePartition": self.date_partition,
            "ttl": self.ttl,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class QueryPage:
    """One page of records from a store query."""

    items: list[AuditLogRecord] = field(default_factory=list)
    cursor: Optional[str] = None
