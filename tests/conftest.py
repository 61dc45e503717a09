"""Shared fixtures: test settings, a manual clock, a SQLite audit store."""

import os

# Settings are read at import time; set the test environment first
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-phi-audit-0123456789")
os.environ.setdefault("ENCRYPTION_MASTER_KEYS", "test-master-key")
os.environ.setdefault("PATIENT_INDEX_KEY", "test-patient-index-key")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from phi_audit.audit.crypto import EnvelopeCryptoProvider
from phi_audit.audit.ingestion import AuditIngestionService
from phi_audit.audit.store import SqlAuditStore
from phi_audit.models.database import Base
from tests.helpers import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def crypto() -> EnvelopeCryptoProvider:
    return EnvelopeCryptoProvider(
        master_keys=["test-master-key"],
        index_key="test-patient-index-key",
        timeout_seconds=2.0,
        max_attempts=2,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory on a fresh SQLite database with the audit schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlAuditStore:
    return SqlAuditStore(session_factory=session_factory, timeout_seconds=5.0, batch_limit=25)


@pytest_asyncio.fixture
async def ingestion(store, crypto):
    service = AuditIngestionService(store, crypto, max_attempts=2)
    yield service
    await service.wait_idle()
