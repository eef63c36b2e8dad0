"""
Authentication Middleware and Dependencies

Provides:
- get_current_user: AuthUser from the bearer token, or None
- get_current_user_required: AuthUser from the bearer token, 401 otherwise
"""

from typing import Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from logging_config import set_request_user
from sentry_integration import set_user
from services.auth import AuthUser, user_from_token

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


def _attach_user_context(user: AuthUser):
    """Tag logs and Sentry events for the rest of the request with the identity."""
    set_request_user(user.id)
    set_user(user.id)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Optional[AuthUser]:
    """
    Extract current user from JWT token.
    Returns None if no token or invalid token.
    """
    if not credentials:
        return None

    user = user_from_token(credentials.credentials)
    if user:
        _attach_user_context(user)
    return user


async def get_current_user_required(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> AuthUser:
    """
    Extract current user from JWT token.
    Raises 401 if no token or invalid token.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = user_from_token(credentials.credentials)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    _attach_user_context(user)
    return user
