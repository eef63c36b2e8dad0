"""
Authentication context for the Member Portal

Access tokens are issued by the hosted identity provider and signed with
its JWT secret. This module only verifies them and turns the claims into
an explicit AuthUser that callers pass around; nothing here looks up a
global session.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from jose import JWTError, jwt
from pydantic import BaseModel

from config import get_settings

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class TokenData(BaseModel):
    """Data extracted from JWT token"""
    user_id: str
    email: str
    role: str
    exp: Optional[datetime] = None


class AuthUser(BaseModel):
    """Authenticated identity context"""
    id: str
    email: str
    role: str = "authenticated"


# ==================== JWT UTILITIES ====================

def decode_token(
    token: str,
    secret: Optional[str] = None,
    audience: Optional[str] = None
) -> Optional[TokenData]:
    """Decode and validate a provider-issued access token"""
    settings = get_settings()
    secret = secret or settings.SUPABASE_JWT_SECRET
    audience = audience or settings.JWT_AUDIENCE

    if not secret:
        logger.error("SUPABASE_JWT_SECRET is not configured; rejecting token")
        return None

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            audience=audience
        )
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        return None

    user_id = payload.get("sub")
    email = payload.get("email")
    exp = payload.get("exp")

    if not user_id or not email:
        return None

    return TokenData(
        user_id=user_id,
        email=email,
        role=payload.get("role", "authenticated"),
        exp=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None
    )


def user_from_token(token: str) -> Optional[AuthUser]:
    """Build an AuthUser from a bearer token, or None if it is not valid."""
    token_data = decode_token(token)
    if not token_data:
        return None

    return AuthUser(
        id=token_data.user_id,
        email=token_data.email,
        role=token_data.role
    )
