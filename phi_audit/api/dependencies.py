"""
Service wiring.

Builds the audit services once and hands them to routes through FastAPI
dependencies. The lifespan builds them with Redis attached; anything that
runs without the lifespan (tests over ASGITransport, scripts) gets them
built lazily on first use.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from redis.asyncio import Redis

from phi_audit.api.middleware.correlation import get_correlation_id
from phi_audit.audit.crypto import CryptoProvider, get_crypto_provider
from phi_audit.audit.ingestion import AuditIngestionService
from phi_audit.audit.models import IngestionContext
from phi_audit.audit.monitor import SuspiciousActivityMonitor
from phi_audit.audit.outbox import AuditOutbox
from phi_audit.audit.query import AuditQueryService
from phi_audit.audit.report import AuditReportService
from phi_audit.audit.store import SqlAuditStore, get_audit_store
from phi_audit.session.clock import Clock
from phi_audit.session.registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class AuditServices:
    store: SqlAuditStore
    crypto: CryptoProvider
    outbox: AuditOutbox
    monitor: SuspiciousActivityMonitor
    ingestion: AuditIngestionService
    queries: AuditQueryService
    reports: AuditReportService
    sessions: SessionRegistry


def build_services(
    store: Optional[SqlAuditStore] = None,
    crypto: Optional[CryptoProvider] = None,
    redis_client: Optional[Redis] = None,
    clock: Optional[Clock] = None,
) -> AuditServices:
    """Wire the audit services together."""
    store = store or get_audit_store()
    crypto = crypto or get_crypto_provider()
    outbox = AuditOutbox(redis_client)
    monitor = SuspiciousActivityMonitor(store, emit=outbox.put)
    ingestion = AuditIngestionService(store, crypto, monitor=monitor)

    return AuditServices(
        store=store,
        crypto=crypto,
        outbox=outbox,
        monitor=monitor,
        ingestion=ingestion,
        queries=AuditQueryService(store, crypto, ingestion),
        reports=AuditReportService(store),
        sessions=SessionRegistry(emit=outbox.submit, clock=clock),
    )


# Singleton
_services: Optional[AuditServices] = None


def set_services(services: Optional[AuditServices]) -> None:
    global _services
    _services = services


def get_services() -> AuditServices:
    """FastAPI dependency providing the wired audit services."""
    global _services
    if _services is None:
        logger.info("Building audit services without Redis")
        _services = build_services()
    return _services


def get_ingestion_context(request: Request) -> IngestionContext:
    """Transport metadata used to enrich events that omit it."""
    return IngestionContext(
        source_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        correlation_id=get_correlation_id(),
    )
