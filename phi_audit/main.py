"""
PHI Audit API

FastAPI application entry point: audit ingestion and query, PHI session
guards and session verification.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from phi_audit.api.dependencies import build_services, set_services
from phi_audit.api.middleware.correlation import CorrelationIdMiddleware
from phi_audit.api.routes import audit, health, sessions, verify
from phi_audit.audit.errors import AuditError
from phi_audit.audit.monitor import MonitorSweeper
from phi_audit.audit.outbox import OutboxDrainer
from phi_audit.audit.store import RetentionSweeper
from phi_audit.config import settings
from phi_audit.infra.database import close_db, init_db
from phi_audit.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    health.set_start_time()

    # Schema is provisioned separately in production
    if not settings.is_production:
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    redis = await RedisClient.get_client()
    if redis is None:
        logger.warning("Redis unavailable - audit outbox running in memory")

    services = build_services(redis_client=redis)
    set_services(services)
    await services.outbox.recover()

    background = [
        RetentionSweeper(services.store),
        OutboxDrainer(services.outbox, services.ingestion),
        MonitorSweeper(services.monitor),
    ]
    for task in background:
        task.start()

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    services.sessions.close_all()
    for task in background:
        await task.stop()

    # Land whatever is still in flight
    await services.outbox.flush()
    await services.ingestion.wait_idle()
    await services.outbox.drain_once(services.ingestion)

    await RedisClient.close()
    await close_db()
    set_services(None)

    logger.info("Shutdown complete")


app = FastAPI(
    title="PHI Audit API",
    description="""
    Audit trail and PHI session compliance service.

    ## Features
    - Immutable, encrypted audit trail with retention
    - Indexed audit queries with selective decryption
    - 15-minute PHI session window with warning and forced logout
    - Suspicious-activity detection

    ## Authentication
    Query, report and session endpoints require a bearer token from the
    identity provider.
    """,
    version=health.VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

# Middleware execution order (reverse of add order):
# 1. CorrelationIdMiddleware - sets the request correlation id
# 2. CORSMiddleware - handles CORS headers and preflight

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)

app.add_middleware(CorrelationIdMiddleware)


@app.exception_handler(AuditError)
async def audit_exception_handler(request: Request, exc: AuditError) -> JSONResponse:
    """Render audit failures with their machine code."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured details go out as-is; plain ones as {error, message}."""
    if isinstance(exc.detail, dict):
        content = exc.detail
    elif exc.status_code == status.HTTP_403_FORBIDDEN:
        content = {"error": "UNAUTHORIZED", "message": "Not authorized"}
    else:
        content = {"error": "HTTP_ERROR", "message": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = exc.errors()
    logger.warning(f"Validation error: {errors}")

    field = None
    if errors:
        loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query")]
        field = ".".join(loc) or None

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "field": field,
            "detail": jsonable_encoder(errors),
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    message = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_ERROR",
            "message": message,
        },
    )


@app.middleware("http")
async def request_lifecycle_middleware(request: Request, call_next):
    """
    Middleware for request lifecycle management.

    Logs request duration in debug mode.
    """
    start_time = time.time()

    response = await call_next(request)

    if settings.debug:
        duration = time.time() - start_time
        logger.debug(
            f"{request.method} {request.url.path} "
            f"completed in {duration:.3f}s"
        )

    return response


# Health check routes (no auth required)
app.include_router(health.router)
app.include_router(audit.router)
app.include_router(sessions.router)
app.include_router(verify.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """
    Root endpoint.

    Returns basic API information.
    """
    return {
        "name": settings.app_name,
        "version": health.VERSION,
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "phi_audit.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
