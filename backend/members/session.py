"""
Member Session Resolution

The caller passes the already-authenticated identity (AuthUser) in; there
is no ambient session lookup. Route predicates are pure string checks.
"""

import logging
from typing import Optional, Any, Protocol

from config import get_settings
from services.auth import AuthUser

from .errors import UnauthorizedError
from .models import MemberSession, RouteDecision

logger = logging.getLogger(__name__)

# Paths reachable without a session. "/" only matches the landing page itself.
PUBLIC_ROUTE_PREFIXES = ("/login", "/register", "/member/login", "/trainer-checkin", "/go")


class MemberProfileLookup(Protocol):
    async def find_member_profile_by_email(self, email: str) -> Optional[Any]: ...


class TrainerLookup(Protocol):
    async def find_trainer_by_user_id(self, user_id: str) -> Optional[Any]: ...


class PortalLookup(MemberProfileLookup, TrainerLookup, Protocol):
    pass


# ==================== SESSION ====================

async def resolve_member_session(
    user: Optional[AuthUser],
    store: MemberProfileLookup
) -> Optional[MemberSession]:
    """
    Join the authenticated identity with its member profile and client.

    Returns None when there is no identity or the identity is not a member.
    """
    if user is None:
        return None

    account = await store.find_member_profile_by_email(user.email)
    if account is None:
        logger.debug(f"Identity {user.id} has no member profile")
        return None

    return MemberSession(
        identity_id=user.id,
        email=account.email,
        profile=account.to_dict(),
        client=account.client.to_dict() if account.client else None
    )


async def require_member_session(
    user: Optional[AuthUser],
    store: MemberProfileLookup
) -> MemberSession:
    """resolve_member_session, raising UnauthorizedError when empty."""
    session = await resolve_member_session(user, store)
    if session is None:
        raise UnauthorizedError()
    return session


# ==================== ROUTE CLASSIFICATION ====================

def is_member_route(path: str) -> bool:
    return path.startswith(get_settings().MEMBER_ROUTE_PREFIX)


def is_trainer_route(path: str) -> bool:
    return path.startswith(get_settings().TRAINER_ROUTE_PREFIX)


def is_public_route(path: str) -> bool:
    if path == "/":
        return True
    return any(path.startswith(prefix) for prefix in PUBLIC_ROUTE_PREFIXES)


def login_path_for(path: str) -> str:
    """Login page a signed-out caller is sent to for this path."""
    settings = get_settings()
    if is_member_route(path):
        return settings.MEMBER_LOGIN_PATH
    return settings.TRAINER_LOGIN_PATH


async def evaluate_route_access(
    path: str,
    user: Optional[AuthUser],
    store: PortalLookup
) -> RouteDecision:
    """Decide whether the caller may open a portal path."""
    settings = get_settings()

    if is_public_route(path):
        return RouteDecision(path=path, allowed=True, reason="public")

    if user is None:
        return RouteDecision(
            path=path,
            allowed=False,
            redirect_to=login_path_for(path),
            reason="not_authenticated"
        )

    if is_member_route(path):
        session = await resolve_member_session(user, store)
        if session is None:
            return RouteDecision(
                path=path,
                allowed=False,
                redirect_to=settings.MEMBER_LOGIN_PATH,
                reason="not_a_member"
            )
    elif is_trainer_route(path):
        trainer = await store.find_trainer_by_user_id(user.id)
        if trainer is None:
            return RouteDecision(
                path=path,
                allowed=False,
                redirect_to=settings.TRAINER_LOGIN_PATH,
                reason="not_a_trainer"
            )

    return RouteDecision(path=path, allowed=True)
