"""
Authentication dependency for FastAPI endpoints.

Provides JWT verification via Supabase auth.get_user() and a FastAPI
dependency that can be used to protect endpoints.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

# auto_error=False so a missing header gets the same 401 envelope as a bad token
_bearer_scheme = HTTPBearer(auto_error=False)


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None


def _unauthenticated(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"message": message, "code": "unauthenticated"},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 401: Token is missing, invalid, expired, or user not found.
        HTTPException 503: Supabase client not configured.
    """
    if credentials is None or not credentials.credentials:
        raise _unauthenticated("Authentication required")

    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(
            status_code=503,
            detail={"message": "Authentication service unavailable", "code": "auth_unavailable"},
        )

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise _unauthenticated("Invalid or expired token")
        return AuthenticatedUser(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise _unauthenticated("Invalid or expired token") from e


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
