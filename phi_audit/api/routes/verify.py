"""
Session Verification Endpoint

GET|POST /auth/verify-session with a bearer token returns
`{valid, reason?, expiresAt?, timeRemaining?}`; 401 once the PHI window or
the token lifetime has passed.
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials

from phi_audit.api.middleware.auth import bearer_scheme, read_claims
from phi_audit.session.verification import verify_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.api_route("/verify-session", methods=["GET", "POST"], summary="Verify PHI session")
async def verify(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
):
    claims = read_claims(credentials)
    result = verify_session(claims, time.time())

    if not result.valid:
        logger.info(f"Session rejected for user={claims.get('sub')}: {result.reason}")
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=result.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result.to_dict()


@router.options("/verify-session", include_in_schema=False)
async def verify_preflight() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=None,
        headers={
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type, Authorization",
        },
    )
