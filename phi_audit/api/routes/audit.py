"""
Audit Endpoints

Ingestion (single and batch), query and report over the audit trail.
"""

import logging
import time
from datetime import datetime, time as dt_time, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status

from phi_audit.api.dependencies import AuditServices, get_ingestion_context, get_services
from phi_audit.api.middleware.auth import Principal, require_auth
from phi_audit.audit.errors import AuditUnauthorized, AuditValidationError
from phi_audit.audit.models import AuditEvent, IngestionContext, parse_timestamp
from phi_audit.audit.query import AuditQuery, Reviewer
from phi_audit.config import settings
from phi_audit.session.verification import require_phi_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["Audit"])


def parse_date_param(value: Optional[str], field: str, end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse a date or instant query parameter.

    A bare date means the start of that day, or its last instant for
    `end_of_day` bounds.
    """
    if not value:
        return None
    try:
        if len(value) == 10:
            day = datetime.strptime(value, "%Y-%m-%d").date()
            clock = dt_time.max if end_of_day else dt_time.min
            return datetime.combine(day, clock, tzinfo=timezone.utc)
        return parse_timestamp(value)
    except ValueError:
        raise AuditValidationError(f"{field} must be a date or ISO-8601 instant", field=field)


def reviewer_for(principal: Principal) -> Reviewer:
    return Reviewer.for_roles(principal.sub, principal.roles, session_id=principal.sid)


# ==================================
# Ingestion
# ==================================

@router.post(
    "/logs",
    status_code=status.HTTP_201_CREATED,
    summary="Submit one audit event",
)
async def submit_log(
    event: AuditEvent,
    context: IngestionContext = Depends(get_ingestion_context),
    services: AuditServices = Depends(get_services),
) -> dict:
    event_id = await services.ingestion.ingest(event, context)
    return {"message": "Audit log stored successfully", "id": event_id}


@router.post(
    "/batch",
    status_code=status.HTTP_201_CREATED,
    summary="Submit up to 25 audit events",
)
async def submit_batch(
    events: list[AuditEvent] = Body(...),
    context: IngestionContext = Depends(get_ingestion_context),
    services: AuditServices = Depends(get_services),
) -> dict:
    ids = await services.ingestion.ingest_batch(events, context)
    return {
        "message": "Batch audit logs stored successfully",
        "count": len(ids),
        "ids": ids,
    }


@router.options("/logs", include_in_schema=False)
@router.options("/batch", include_in_schema=False)
async def preflight() -> dict:
    return {"message": "OK"}


# ==================================
# Query
# ==================================

@router.get("/logs", summary="Query audit events")
async def query_logs(
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    event_type: Optional[str] = Query(None, alias="eventType"),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    phi_only: bool = Query(False, alias="phiOnly"),
    limit: int = Query(settings.audit_query_default_limit),
    cursor: Optional[str] = Query(None),
    principal: Principal = Depends(require_auth),
    context: IngestionContext = Depends(get_ingestion_context),
    services: AuditServices = Depends(get_services),
) -> dict:
    """
    Returns `{logs, count, cursor}` newest first.

    The PHI session window is re-checked on every call from the token's
    issue time.
    """
    require_phi_session(principal.claims, time.time())

    query = AuditQuery(
        user_id=user_id,
        start_date=parse_date_param(start_date, "startDate"),
        end_date=parse_date_param(end_date, "endDate", end_of_day=True),
        event_type=event_type,
        patient_id=patient_id,
        phi_only=phi_only,
        limit=limit,
        cursor=cursor,
    )
    result = await services.queries.run(reviewer_for(principal), query, context)
    return result.to_dict()


@router.get("/report", summary="Audit summary for a date range")
async def audit_report(
    start_date: str = Query(..., alias="startDate"),
    end_date: str = Query(..., alias="endDate"),
    principal: Principal = Depends(require_auth),
    services: AuditServices = Depends(get_services),
) -> dict:
    if not reviewer_for(principal).can_read:
        logger.warning(f"Audit report denied for user={principal.sub}")
        raise AuditUnauthorized()

    report = await services.reports.generate(
        parse_date_param(start_date, "startDate"),
        parse_date_param(end_date, "endDate", end_of_day=True),
    )
    return report.to_dict()
