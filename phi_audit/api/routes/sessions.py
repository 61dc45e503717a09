"""
PHI Session Endpoints

Drive a session's guard from a UI client: open it after authentication,
poll its state (warning countdown), report activity, continue or log out.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from phi_audit.api.dependencies import AuditServices, get_services
from phi_audit.api.middleware.auth import Principal, require_auth
from phi_audit.audit.errors import AuditValidationError, SessionExpired
from phi_audit.session.guard import SessionGuard
from phi_audit.session.registry import SessionRegistry
from phi_audit.session.state import SessionState
from phi_audit.session.verification import require_phi_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


class ActivityRequest(BaseModel):
    """A qualifying user interaction reported by the client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: str
    context: Optional[str] = None


class ContextRequest(BaseModel):
    """What is on screen: a resource category and, optionally, the record shown."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    context: Optional[str] = None
    resource_id: Optional[str] = None


def _owned_guard(session_id: str, principal: Principal, registry: SessionRegistry) -> SessionGuard:
    """
    Raises:
        HTTPException 403: Session belongs to someone else
        SessionExpired: Session has ended (401 with the reason code)
        HTTPException 404: Unknown session
    """
    guard = registry.get(session_id)
    if guard is not None:
        if guard.user_id != principal.sub:
            logger.warning(f"User {principal.sub} denied access to session {session_id}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
        return guard

    ended = registry.ended(session_id)
    if ended is not None:
        user_id, reason = ended
        if user_id != principal.sub:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
        raise SessionExpired(reason.value)

    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")


def _snapshot_or_expired(guard: SessionGuard) -> dict:
    if guard.state == SessionState.EXPIRED:
        raise SessionExpired(guard.reason.value if guard.reason else "timeout")
    return guard.snapshot().to_dict()


@router.post("", status_code=status.HTTP_201_CREATED, summary="Open a PHI session")
async def create_session(
    principal: Principal = Depends(require_auth),
    services: AuditServices = Depends(get_services),
) -> dict:
    registry = services.sessions

    if principal.sid:
        existing = registry.get(principal.sid)
        ended = registry.ended(principal.sid)
        owner = existing.user_id if existing is not None else ended[0] if ended else None
        if owner is not None and owner != principal.sub:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")

    # A token past its PHI window needs re-authentication, not a new guard
    require_phi_session(principal.claims, registry.clock.time())

    issued_at = float(principal.iat)
    guard = registry.create(
        user_id=principal.sub,
        token_issued_at=issued_at,
        token_expires_at=principal.token_expires_at or issued_at,
        session_id=principal.sid,
        user_role=",".join(principal.roles) or None,
    )
    return _snapshot_or_expired(guard)


@router.get("/{session_id}", summary="Session state and remaining time")
async def get_session(
    session_id: str,
    principal: Principal = Depends(require_auth),
    services: AuditServices = Depends(get_services),
) -> dict:
    guard = _owned_guard(session_id, principal, services.sessions)
    return guard.snapshot().to_dict()


@router.post("/{session_id}/activity", summary="Report user activity")
async def record_activity(
    session_id: str,
    body: ActivityRequest,
    principal: Principal = Depends(require_auth),
    services: AuditServices = Depends(get_services),
) -> dict:
    guard = _owned_guard(session_id, principal, services.sessions)
    try:
        reset = guard.record_activity(body.kind)
    except ValueError:
        raise AuditValidationError(
            "kind must be one of pointer, keyboard, scroll, touch", field="kind"
        )
    if body.context is not None and body.context != guard.context:
        guard.set_context(body.context)

    return {"reset": reset, "session": _snapshot_or_expired(guard)}


@router.post("/{session_id}/context", summary="Set the resource category on screen")
async def set_context(
    session_id: str,
    body: ContextRequest,
    principal: Principal = Depends(require_auth),
    services: AuditServices = Depends(get_services),
) -> dict:
    guard = _owned_guard(session_id, principal, services.sessions)
    guard.set_context(body.context, resource_id=body.resource_id)
    return _snapshot_or_expired(guard)


@router.post("/{session_id}/continue", summary="Continue the session from the warning")
async def continue_session(
    session_id: str,
    principal: Principal = Depends(require_auth),
    services: AuditServices = Depends(get_services),
) -> dict:
    guard = _owned_guard(session_id, principal, services.sessions)
    guard.continue_session()
    return _snapshot_or_expired(guard)


@router.post("/{session_id}/logout", summary="Log out now")
async def logout(
    session_id: str,
    principal: Principal = Depends(require_auth),
    services: AuditServices = Depends(get_services),
) -> dict:
    guard = _owned_guard(session_id, principal, services.sessions)
    guard.logout(user_initiated=True)
    return guard.snapshot().to_dict()
