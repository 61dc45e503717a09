"""
Audit error taxonomy.

Every failure the audit core reports to a caller is an AuditError with a
stable machine code. Suspicious-activity detections are never raised;
they are recorded as audit events.
"""

from typing import Any, Optional


class AuditError(Exception):
    """Base class for audit core failures."""

    code: str = "AUDIT_ERROR"
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        """Extra structured fields included in the error body."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update({k: v for k, v in self.details().items() if v is not None})
        return body


class AuditValidationError(AuditError):
    """Malformed or incomplete event. Caller's fault, never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        entry_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.field = field
        self.entry_id = entry_id

    def details(self) -> dict[str, Any]:
        return {"field": self.field, "entryId": self.entry_id}


class EncryptionFailure(AuditError):
    """A sensitive field could not be sealed. The write is refused."""

    code = "ENCRYPTION_FAILURE"
    status_code = 500

    def __init__(self, field: str, entry_id: Optional[str] = None):
        super().__init__(f"Failed to encrypt sensitive field '{field}'")
        self.field = field
        self.entry_id = entry_id

    def details(self) -> dict[str, Any]:
        return {"field": self.field, "entryId": self.entry_id}


class DecryptionFailure(AuditError):
    """A sealed value could not be opened for an authorized reader."""

    code = "DECRYPTION_FAILURE"
    status_code = 500

    def __init__(self, field: str):
        super().__init__(f"Failed to decrypt sensitive field '{field}'")
        self.field = field


class StoreWriteFailure(AuditError):
    """Store write failed after the retry budget was spent."""

    code = "STORE_WRITE_FAILURE"
    status_code = 500

    def __init__(
        self,
        message: str,
        succeeded: Optional[list[str]] = None,
        failed: Optional[list[str]] = None,
    ):
        super().__init__(message)
        self.succeeded = succeeded or []
        self.failed = failed or []

    @property
    def is_partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    def details(self) -> dict[str, Any]:
        return {"succeeded": self.succeeded, "failed": self.failed}


class AuditUnauthorized(AuditError):
    """Caller may not read audit data. Never reveals whether records exist."""

    code = "UNAUTHORIZED"
    status_code = 403

    def __init__(self):
        super().__init__("Not authorized")


class SessionExpired(AuditError):
    """PHI window or token lifetime has passed. Always ends the session."""

    code = "SESSION_EXPIRED"
    status_code = 401

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"reason": self.reason}


class OutboxFull(AuditError):
    """The outbound queue is at capacity; the event was rejected."""

    code = "OUTBOX_FULL"
    status_code = 503

    def __init__(self, max_size: int):
        super().__init__(f"Audit outbox is full ({max_size} events)")
        self.max_size = max_size


class ImmutableRecordError(AuditError):
    """Raised when anything attempts to modify a persisted audit record."""

    code = "IMMUTABLE_RECORD"
    status_code = 500
