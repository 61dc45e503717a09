"""
Audit core: event model, error taxonomy and field encryption.

Services (store, ingestion, query, monitor, outbox) are imported from their
own modules; the store pulls in the ORM model, which depends on this
package's errors.
"""

from .errors import (
    AuditError,
    AuditUnauthorized,
    AuditValidationError,
    DecryptionFailure,
    EncryptionFailure,
    ImmutableRecordError,
    OutboxFull,
    SessionExpired,
    StoreWriteFailure,
)
from .models import (
    AuditEvent,
    AuditEventType,
    AuditLogRecord,
    AuditResult,
    IngestionContext,
    QueryPage,
)
from .crypto import CryptoProvider, EnvelopeCryptoProvider, get_crypto_provider

__all__ = [
    # Errors
    "AuditError",
    "AuditUnauthorized",
    "AuditValidationError",
    "DecryptionFailure",
    "EncryptionFailure",
    "ImmutableRecordError",
    "OutboxFull",
    "SessionExpired",
    "StoreWriteFailure",
    # Models
    "AuditEvent",
    "AuditEventType",
    "AuditLogRecord",
    "AuditResult",
    "IngestionContext",
    "QueryPage",
    # Crypto
    "CryptoProvider",
    "EnvelopeCryptoProvider",
    "get_crypto_provider",
]
