"""
Bearer Token Authentication

Tokens are issued by the external identity provider; this service only
verifies them. The authenticated principal is attached to
`request.state`.
"""

import logging
import time
from typing import Any, Optional

import jwt
from fastapi import HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from phi_audit.config import settings
from phi_audit.session.verification import TOKEN_EXPIRED

logger = logging.getLogger(__name__)

# Bearer scheme (auto_error off so the 401 body is ours)
bearer_scheme = HTTPBearer(auto_error=False)

NO_TOKEN = "No authorization token provided"
INVALID_TOKEN = "Invalid or expired token"


class Principal:
    """Authenticated caller, built from verified token claims."""

    def __init__(
        self,
        sub: str,
        iat: Optional[float],
        exp: Optional[float],
        roles: Optional[list[str]] = None,
        email: Optional[str] = None,
        sid: Optional[str] = None,
        claims: Optional[dict[str, Any]] = None,
    ):
        self.sub = sub
        self.iat = iat
        self.exp = exp
        self.roles = roles or []
        self.email = email
        self.sid = sid
        self.claims = claims or {}

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Principal":
        """Build a principal from decoded token claims."""
        roles = claims.get("roles") or claims.get("cognito:groups") or []
        if isinstance(roles, str):
            roles = [roles]
        if claims.get("role"):
            roles = [*roles, claims["role"]]

        return cls(
            sub=str(claims["sub"]),
            iat=claims.get("iat"),
            exp=claims.get("exp"),
            roles=list(roles),
            email=claims.get("email"),
            sid=claims.get("sid"),
            claims=claims,
        )

    @property
    def token_expires_at(self) -> Optional[float]:
        if self.exp is not None:
            return float(self.exp)
        if self.iat is not None:
            return float(self.iat) + settings.token_lifetime_minutes * 60
        return None

    def __repr__(self) -> str:
        return f"<Principal(sub={self.sub}, roles={self.roles})>"


def _unauthorized(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"valid": False, "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> dict[str, Any]:
    """
    Verify a token's signature and return its claims.

    Expiry is not checked here: callers compare `exp` themselves so that an
    expired token can be told apart from an invalid one.

    Raises:
        jwt.InvalidTokenError: If the token is malformed or the signature fails
    """
    options = {"verify_exp": False, "verify_aud": settings.jwt_audience is not None}
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
        options=options,
    )


def read_claims(credentials: Optional[HTTPAuthorizationCredentials]) -> dict[str, Any]:
    """
    Decode the bearer credentials of a request.

    Raises:
        HTTPException 401: No token, or the token is invalid
    """
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise _unauthorized(NO_TOKEN)

    try:
        claims = decode_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        logger.warning(f"Auth failed: invalid token ({type(e).__name__})")
        raise _unauthorized(INVALID_TOKEN)

    if not claims.get("sub"):
        raise _unauthorized(INVALID_TOKEN)
    return claims


async def require_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Principal:
    """
    FastAPI dependency that requires a valid, unexpired bearer token.

    Raises:
        HTTPException 401: No token, invalid token or expired token

    Usage:
        @router.get("/protected")
        async def protected(principal: Principal = Depends(require_auth)):
            print(principal.sub)
    """
    client_ip = request.client.host if request.client else "unknown"
    claims = read_claims(credentials)
    principal = Principal.from_claims(claims)

    expires_at = principal.token_expires_at
    if expires_at is not None and time.time() >= expires_at:
        logger.warning(f"Auth failed: token expired | User: {principal.sub} | IP: {client_ip}")
        raise _unauthorized(TOKEN_EXPIRED)

    request.state.principal = principal
    logger.debug(f"Auth success | User: {principal.sub} | IP: {client_ip}")
    return principal
