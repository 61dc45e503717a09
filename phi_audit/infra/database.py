"""
Database Connection and Session Management

Provides the async SQLAlchemy 2.0 engine and session factory backing the
audit store.
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from phi_audit.config import settings
from phi_audit.models.database import Base

logger = logging.getLogger(__name__)


# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    poolclass=NullPool,
    future=True,
)

# Create session factory
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def init_db() -> None:
    """
    Create the audit table and its indexes.

    WARNING: In production the schema is provisioned separately; this is for
    development and tests.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Audit tables ensured")


async def close_db() -> None:
    """
    Close all database connections.

    Should be called during application shutdown.
    """
    await engine.dispose()
