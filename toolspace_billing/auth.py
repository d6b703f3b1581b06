"""
Authentication dependencies for billing endpoints.

Bearer tokens are verified through Supabase ``auth.get_user()``. Anonymous
Supabase sessions may read their billing status but must link a real
account before anything is purchased, so a Stripe customer is never created
for a throwaway identity.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """A caller whose token Supabase accepted."""

    id: str
    email: str | None = None
    is_anonymous: bool = False


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    Resolve the bearer token to a user.

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

    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return AuthenticatedUser(
        id=str(user.id),
        email=user.email,
        is_anonymous=bool(getattr(user, "is_anonymous", False)),
    )


async def get_registered_user(
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    """Like get_current_user, but rejects anonymous sessions with 403."""
    if user.is_anonymous:
        raise HTTPException(status_code=403, detail="Link your account before upgrading")
    return user


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
RegisteredUser = Annotated[AuthenticatedUser, Depends(get_registered_user)]
