"""
Crypto Provider

Envelope encryption for the sensitive audit fields (user email, patient id).
Every value is sealed with its own data key; the data key is sealed with a
master key referenced by id so master keys can rotate independently.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from phi_audit.audit.errors import DecryptionFailure, EncryptionFailure
from phi_audit.config import settings

logger = logging.getLogger(__name__)

CIPHERTEXT_PREFIX = "enc:v1:"

# Failures worth another attempt (a remote key service timing out or dropping)
TRANSIENT_ERRORS = (TimeoutError, ConnectionError)


class CryptoProvider(ABC):
    """
    Seals and opens sensitive field values.

    Subclasses implement `_seal` and `_open`; this base class bounds each
    call with a timeout and a small fixed retry budget, and turns any
    failure into EncryptionFailure or DecryptionFailure. It never returns
    the plaintext in place of a ciphertext.
    """

    def __init__(self, timeout_seconds: float = 2.0, max_attempts: int = 3):
        self._timeout = timeout_seconds
        self._max_attempts = max_attempts

    @property
    @abstractmethod
    def key_reference(self) -> str:
        """Identifier of the master key currently used for sealing."""

    @abstractmethod
    async def _seal(self, plaintext: str) -> str:
        ...

    @abstractmethod
    async def _open(self, ciphertext: str) -> str:
        ...

    @abstractmethod
    def blind_index(self, value: str) -> str:
        """Deterministic keyed hash of a value, safe to index on."""

    @staticmethod
    def is_ciphertext(value: Optional[str]) -> bool:
        return isinstance(value, str) and value.startswith(CIPHERTEXT_PREFIX)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )

    async def encrypt(self, field: str, plaintext: str) -> str:
        """
        Seal a sensitive field value.

        Args:
            field: Field name (used for error reporting only)
            plaintext: Value to seal

        Returns:
            Ciphertext blob

        Raises:
            EncryptionFailure: If the value could not be sealed
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await asyncio.wait_for(self._seal(plaintext), timeout=self._timeout)
        except Exception as e:
            logger.error(f"Encryption failed for field={field}: {type(e).__name__}")
            raise EncryptionFailure(field) from e
        raise EncryptionFailure(field)

    async def decrypt(self, field: str, ciphertext: str) -> str:
        """
        Open a sealed field value.

        Raises:
            DecryptionFailure: If the value could not be opened
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await asyncio.wait_for(self._open(ciphertext), timeout=self._timeout)
        except Exception as e:
            logger.error(f"Decryption failed for field={field}: {type(e).__name__}")
            raise DecryptionFailure(field) from e
        raise DecryptionFailure(field)


class EnvelopeCryptoProvider(CryptoProvider):
    """
    Envelope encryption on Fernet (AES-128-CBC + HMAC-SHA256).

    Blob format: enc:v1:<key-id>:<base64 json {"dk": wrapped data key, "ct": ciphertext}>

    Usage:
        crypto = EnvelopeCryptoProvider(master_keys=["k1"], index_key="idx")
        blob = await crypto.encrypt("patient_id", "p1")
        assert await crypto.decrypt("patient_id", blob) == "p1"
    """

    def __init__(
        self,
        master_keys: list[str],
        index_key: str,
        timeout_seconds: float = 2.0,
        max_attempts: int = 3,
    ):
        super().__init__(timeout_seconds=timeout_seconds, max_attempts=max_attempts)
        if not master_keys:
            raise ValueError("At least one master key is required")

        self._masters: dict[str, Fernet] = {}
        for raw in master_keys:
            key = self._ensure_valid_key(raw)
            self._masters[self._key_id(key)] = Fernet(key)
        self._active_id = self._key_id(self._ensure_valid_key(master_keys[0]))
        self._index_key = index_key.encode()

    @staticmethod
    def _ensure_valid_key(key: str) -> bytes:
        """Accept a Fernet key as-is, otherwise derive one from the string."""
        if len(key) == 44 and key.endswith("="):
            return key.encode()
        derived = hashlib.sha256(key.encode()).digest()
        return base64.urlsafe_b64encode(derived)

    @staticmethod
    def _key_id(key: bytes) -> str:
        return hashlib.sha256(key).hexdigest()[:12]

    @property
    def key_reference(self) -> str:
        return self._active_id

    def _seal_sync(self, plaintext: str) -> str:
        data_key = Fernet.generate_key()
        ciphertext = Fernet(data_key).encrypt(plaintext.encode())
        wrapped = self._masters[self._active_id].encrypt(data_key)
        envelope = json.dumps({"dk": wrapped.decode(), "ct": ciphertext.decode()})
        payload = base64.urlsafe_b64encode(envelope.encode()).decode()
        return f"{CIPHERTEXT_PREFIX}{self._active_id}:{payload}"

    def _open_sync(self, blob: str) -> str:
        if not self.is_ciphertext(blob):
            raise ValueError("Value is not a sealed blob")
        key_id, _, payload = blob[len(CIPHERTEXT_PREFIX):].partition(":")
        master = self._masters.get(key_id)
        if master is None:
            raise KeyError(f"Unknown master key id {key_id}")
        envelope = json.loads(base64.urlsafe_b64decode(payload.encode()))
        try:
            data_key = master.decrypt(envelope["dk"].encode())
            return Fernet(data_key).decrypt(envelope["ct"].encode()).decode()
        except InvalidToken as e:
            raise ValueError("Sealed blob failed authentication") from e

    async def _seal(self, plaintext: str) -> str:
        return await asyncio.to_thread(self._seal_sync, plaintext)

    async def _open(self, ciphertext: str) -> str:
        return await asyncio.to_thread(self._open_sync, ciphertext)

    def blind_index(self, value: str) -> str:
        return hmac.new(self._index_key, value.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def generate_key() -> str:
        """Generate a new master key."""
        return Fernet.generate_key().decode()


# Singleton
_provider: Optional[CryptoProvider] = None


def get_crypto_provider() -> CryptoProvider:
    """Get singleton crypto provider built from settings."""
    global _provider
    if _provider is None:
        _provider = EnvelopeCryptoProvider(
            master_keys=settings.encryption_master_keys_list,
            index_key=settings.patient_index_key,
            timeout_seconds=settings.crypto_timeout_seconds,
            max_attempts=settings.crypto_max_attempts,
        )
        logger.info(f"Crypto provider initialized with key={_provider.key_reference}")
    return _provider
