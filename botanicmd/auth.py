"""
Authentication dependency for FastAPI endpoints.

Bearer tokens are verified server-side via Supabase ``auth.get_user()``;
the client-side session signal lives in services/auth_session.py.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from botanicmd.models.auth import AuthUser

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    try:
        response = await supabase.auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = response.user if response else None
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    metadata = getattr(user, "user_metadata", None) or {}
    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return AuthUser(id=str(user.id), email=user.email, name=metadata.get("full_name"))


CurrentUser = Annotated[AuthUser, Depends(get_current_user)]
