"""
Member Accounts - API Router

Endpoints:
- POST /api/create-member                   - Provision identity + member profile
- GET  /api/members/status                  - Module status
- POST /api/members/login                   - Member password login
- GET  /api/members/session                 - Current member session
- GET  /api/members/route-access            - Portal route guard decision
- GET  /api/members/by-client/{client_id}   - Member profile for a client
- GET  /api/members/email-in-use            - Whether a member email is taken
- PATCH /api/members/{account_id}           - Update member email/password/active flag
- POST /api/members/{account_id}/deactivate - Deactivate a member profile

Permissions:
- create-member: trusted administrative caller (identity provider
  privilege is carried by the server's service role key)
- login, status, route-access: public
- session: authenticated member
- by-client, email-in-use, update, deactivate: trainer
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from middleware.auth import get_current_user, get_current_user_required
from services.auth import AuthUser

from .errors import ProvisionError, UnauthorizedError, MemberUpdateError
from .identity_provider import IdentityProviderClient, get_identity_provider
from .profile_store import MemberProfileStore
from .provisioning import MemberProvisioningService, authenticate_member, update_member_account
from .session import require_member_session, evaluate_route_access

logger = logging.getLogger(__name__)

# create-member lives directly under /api, not /api/members
router = APIRouter(tags=["Members"])
members_router = APIRouter(prefix="/members", tags=["Members"])


# ==================== DEPENDENCIES ====================

def get_profile_store(db: AsyncSession = Depends(get_db)) -> MemberProfileStore:
    return MemberProfileStore(db)


def get_provisioning_service(
    identity_provider: IdentityProviderClient = Depends(get_identity_provider),
    profile_store: MemberProfileStore = Depends(get_profile_store)
) -> MemberProvisioningService:
    return MemberProvisioningService(identity_provider, profile_store)


async def require_trainer(
    current_user: AuthUser = Depends(get_current_user_required),
    store: MemberProfileStore = Depends(get_profile_store)
) -> AuthUser:
    """Only identities with a trainer record may manage member accounts."""
    trainer = await store.find_trainer_by_user_id(current_user.id)
    if not trainer:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Trainer access required"
        )
    return current_user


# ==================== REQUEST MODELS ====================

class CreateMemberRequest(BaseModel):
    """Request model for member provisioning. Presence is checked by the service."""
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(None, description="Member email address")
    password: Optional[str] = Field(None, description="Initial password")
    client_id: Optional[str] = Field(None, alias="clientId", description="Owning client ID")


class MemberUpdateRequest(BaseModel):
    """Request model for member account updates. Omitted fields are left unchanged."""
    email: Optional[str] = Field(None, description="New member email address")
    password: Optional[str] = Field(None, description="New password")
    is_active: Optional[bool] = Field(None, description="Member can sign in")


class MemberLoginRequest(BaseModel):
    """Request model for member login"""
    email: str = Field(..., description="Member email address")
    password: str = Field(..., description="Member password")


# ==================== ENDPOINTS ====================

@router.post("/create-member")
async def create_member(
    request: CreateMemberRequest,
    service: MemberProvisioningService = Depends(get_provisioning_service)
):
    """
    Create a member login for a client.

    Creates a pre-confirmed identity, then the member profile. If the
    profile insert fails the identity is deleted again.

    Returns 200 {"success": true} or 400 {"error": "..."}.
    """
    try:
        await service.provision(
            email=request.email,
            password=request.password,
            client_id=request.client_id
        )
    except ProvisionError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": e.message}
        )

    return {"success": True}


@members_router.get("/status")
async def get_members_status():
    """
    Get member module status.
    No authentication required.
    """
    return {
        "status": "ok",
        "module": "members",
        "version": "1.0.0",
        "features": {
            "create_member": True,
            "compensating_rollback": True,
            "member_login": True,
            "member_update": True,
            "session_resolution": True,
            "route_guard": True
        }
    }


@members_router.post("/login")
async def member_login(
    request: MemberLoginRequest,
    identity_provider: IdentityProviderClient = Depends(get_identity_provider),
    store: MemberProfileStore = Depends(get_profile_store)
):
    """
    Member password login.

    **No authentication required** (public endpoint)
    """
    try:
        return await authenticate_member(identity_provider, store, request.email, request.password)
    except UnauthorizedError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message
        )


@members_router.get("/session")
async def get_member_session(
    current_user: Optional[AuthUser] = Depends(get_current_user),
    store: MemberProfileStore = Depends(get_profile_store)
):
    """
    Resolve the bearer's member session.

    **Permissions:** authenticated member
    """
    try:
        session = await require_member_session(current_user, store)
    except UnauthorizedError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"}
        )

    return session.to_dict()


@members_router.get("/route-access")
async def get_route_access(
    path: str = Query(..., description="Portal path to check"),
    current_user: Optional[AuthUser] = Depends(get_current_user),
    store: MemberProfileStore = Depends(get_profile_store)
):
    """
    Guard decision for a portal path: allowed, or where to redirect.
    """
    decision = await evaluate_route_access(path, current_user, store)
    return decision.to_dict()


@members_router.get("/by-client/{client_id}")
async def get_member_by_client(
    client_id: str,
    current_user: AuthUser = Depends(require_trainer),
    store: MemberProfileStore = Depends(get_profile_store)
):
    """
    Get the member profile for a client.

    **Permissions:** trainer
    """
    account = await store.get_member_profile_by_client_id(client_id)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Member account not found"
        )
    return account.to_dict()


@members_router.get("/email-in-use")
async def get_email_in_use(
    email: str = Query(..., description="Email to check"),
    current_user: AuthUser = Depends(require_trainer),
    store: MemberProfileStore = Depends(get_profile_store)
):
    """
    Check whether a member profile already uses this email.

    **Permissions:** trainer
    """
    return {"email": email, "in_use": await store.is_email_in_use(email)}


@members_router.patch("/{account_id}")
async def update_member(
    account_id: str,
    request: MemberUpdateRequest,
    current_user: AuthUser = Depends(require_trainer),
    identity_provider: IdentityProviderClient = Depends(get_identity_provider),
    store: MemberProfileStore = Depends(get_profile_store)
):
    """
    Update a member's email, password or active flag.

    Email and password changes are applied at the identity provider first.

    **Permissions:** trainer
    """
    try:
        account = await update_member_account(
            identity_provider,
            store,
            account_id,
            email=request.email,
            password=request.password,
            is_active=request.is_active
        )
    except MemberUpdateError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message
        )

    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Member account not found"
        )

    logger.info(f"Member account {account_id} updated by {current_user.id}")
    return {"success": True, "member_account": account.to_dict()}


@members_router.post("/{account_id}/deactivate")
async def deactivate_member(
    account_id: str,
    current_user: AuthUser = Depends(require_trainer),
    store: MemberProfileStore = Depends(get_profile_store)
):
    """
    Deactivate a member profile. The identity is left in place.

    **Permissions:** trainer
    """
    account = await store.deactivate_member_profile(account_id)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Member account not found"
        )

    logger.info(f"Member account {account_id} deactivated by {current_user.id}")
    return {"success": True, "member_account": account.to_dict()}
