"""
Member Provisioning Service

Creates a member as two records in two independent systems:
1. an identity at the identity provider (pre-confirmed)
2. a member profile row in the profile store

There is no transaction spanning both, so ordering plus one compensating
action keeps them paired: the identity is created first, and if the
profile insert fails the identity is deleted again. If that delete also
fails the identity is left orphaned; this is logged at ERROR, reported
to Sentry and attached to the raised ProfileInsertError, never retried.
"""

import re
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Protocol

from sentry_integration import capture_exception

from .errors import (
    MemberValidationError,
    IdentityCreationError,
    ProfileInsertError,
    CompensationError,
    UnauthorizedError,
    MemberUpdateError,
    IdentityProviderError,
    ProfileStoreError,
)
from .models import (
    Identity,
    ProviderSession,
    ProvisionResult,
    ProvisioningState,
    PROVISIONING_TRANSITIONS,
    SagaStep,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ==================== COLLABORATOR INTERFACES ====================

class IdentityProvider(Protocol):
    async def create_user(self, email: str, password: str, pre_confirmed: bool = True) -> Identity: ...

    async def delete_user(self, identity_id: str) -> None: ...


class PasswordSignIn(Protocol):
    async def sign_in_with_password(self, email: str, password: str) -> ProviderSession: ...


class ProfileStore(Protocol):
    async def insert_member_profile(
        self, client_id: str, email: str, active: bool = True, identity_id: Optional[str] = None
    ) -> Any: ...


class ActiveProfileLookup(Protocol):
    async def find_active_member_profile_by_email(self, email: str) -> Optional[Any]: ...


class IdentityUpdater(Protocol):
    async def update_user(
        self, identity_id: str, email: Optional[str] = None, password: Optional[str] = None
    ) -> Identity: ...


class ProfileUpdater(Protocol):
    async def get_member_profile_by_id(self, account_id: str) -> Optional[Any]: ...

    async def update_member_profile(
        self, account_id: str, email: Optional[str] = None, is_active: Optional[bool] = None
    ) -> Optional[Any]: ...


# ==================== AUDIT EVENTS ====================

class MemberAuditEvent:
    """Audit event types for member provisioning."""
    PROVISION_STARTED = "member.provision_started"
    IDENTITY_CREATED = "member.identity_created"
    PROFILE_INSERTED = "member.profile_inserted"
    ROLLED_BACK = "member.rolled_back"
    COMPENSATION_FAILED = "member.compensation_failed"
    PROVISION_REJECTED = "member.provision_rejected"
    LOGIN = "member.login"
    UPDATED = "member.updated"
    UPDATE_REVERT_FAILED = "member.update_revert_failed"


def mask_email(email: str) -> str:
    """a***@example.com; never log full member emails."""
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def error_message(error: Exception) -> str:
    """Message of a collaborator failure, whatever its type."""
    return getattr(error, "message", None) or str(error) or type(error).__name__


def log_member_event(
    event_type: str,
    email: str,
    details: Dict[str, Any],
    success: bool = True
):
    """Log a member operation for the audit trail (email masked)."""
    safe_details = {k: v for k, v in details.items() if k not in ("email", "password")}
    log_entry = {
        "event": event_type,
        "member": mask_email(email),
        "details": safe_details,
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

    if success:
        logger.info(f"Member event: {event_type} for {log_entry['member']}", extra=log_entry)
    else:
        logger.warning(f"Member event FAILED: {event_type} for {log_entry['member']}", extra=log_entry)


# ==================== SAGA ====================

class ProvisioningSaga:
    """
    State machine for one provisioning attempt.

    STARTED -> IDENTITY_CREATED -> PROFILE_INSERTED
                                -> ROLLED_BACK
                                -> COMPENSATION_FAILED
    """

    def __init__(self, email: str, client_id: str):
        self.email = email
        self.client_id = client_id
        self.state = ProvisioningState.STARTED
        self.identity: Optional[Identity] = None
        self.steps: List[SagaStep] = [
            SagaStep(state=ProvisioningState.STARTED, at=datetime.now(timezone.utc))
        ]

    def advance(self, new_state: ProvisioningState, detail: Optional[str] = None):
        if new_state not in PROVISIONING_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid provisioning transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.steps.append(SagaStep(state=new_state, at=datetime.now(timezone.utc), detail=detail))

    @property
    def history(self) -> List[str]:
        return [step.state.value for step in self.steps]

    @property
    def finished(self) -> bool:
        return not PROVISIONING_TRANSITIONS[self.state]


def validate_provision_request(email: Optional[str], password: Optional[str], client_id: Optional[str]) -> str:
    """
    Check the three required fields. Returns the normalized email.

    Raises:
        MemberValidationError
    """
    if not (email or "").strip() or not password or not (client_id or "").strip():
        raise MemberValidationError("Email, password, and clientId are required")

    normalized = email.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise MemberValidationError("Invalid email address")

    return normalized


class MemberProvisioningService:
    """
    Orchestrates the identity provider and the profile store.

    Only this class knows about both; neither collaborator calls the other.
    """

    def __init__(self, identity_provider: IdentityProvider, profile_store: ProfileStore):
        self.identity_provider = identity_provider
        self.profile_store = profile_store
        self.last_saga: Optional[ProvisioningSaga] = None

    async def provision(
        self,
        email: Optional[str],
        password: Optional[str],
        client_id: Optional[str]
    ) -> ProvisionResult:
        """
        Create a pre-confirmed identity and its member profile.

        Raises:
            MemberValidationError: a required field is missing or malformed
            IdentityCreationError: the provider rejected the identity
            ProfileInsertError: the profile insert failed; the identity was
                deleted again unless compensation_error is set
        """
        email = validate_provision_request(email, password, client_id)
        client_id = client_id.strip()

        saga = ProvisioningSaga(email=email, client_id=client_id)
        self.last_saga = saga
        log_member_event(MemberAuditEvent.PROVISION_STARTED, email, {"client_id": client_id})

        # Step 1: identity
        try:
            identity = await self.identity_provider.create_user(email, password, pre_confirmed=True)
        except Exception as e:
            if not isinstance(e, IdentityProviderError):
                logger.exception(f"Unexpected identity provider failure for client {client_id}")
            log_member_event(
                MemberAuditEvent.PROVISION_REJECTED, email,
                {"client_id": client_id, "stage": "identity", "status_code": getattr(e, "status_code", None)},
                success=False
            )
            raise IdentityCreationError(error_message(e))

        saga.identity = identity
        saga.advance(ProvisioningState.IDENTITY_CREATED, detail=identity.id)
        log_member_event(MemberAuditEvent.IDENTITY_CREATED, email, {"identity_id": identity.id})

        # Step 2: profile
        try:
            account = await self.profile_store.insert_member_profile(
                client_id, email, active=True, identity_id=identity.id
            )
        except Exception as e:
            if not isinstance(e, ProfileStoreError):
                logger.exception(f"Unexpected profile store failure for client {client_id}")
            message = error_message(e)
            compensation_error = await self._compensate(saga, identity, message)
            raise ProfileInsertError(message, compensation_error=compensation_error)

        saga.advance(ProvisioningState.PROFILE_INSERTED, detail=str(account.id))
        log_member_event(
            MemberAuditEvent.PROFILE_INSERTED, email,
            {"client_id": client_id, "identity_id": identity.id, "member_account_id": str(account.id)}
        )

        return ProvisionResult(
            identity_id=identity.id,
            member_account_id=str(account.id),
            client_id=client_id,
            email=email
        )

    async def _compensate(
        self,
        saga: ProvisioningSaga,
        identity: Identity,
        insert_error: str
    ) -> Optional[CompensationError]:
        """Delete the identity created by this saga. Called at most once per saga."""
        logger.warning(
            f"Member profile insert failed for identity {identity.id}; "
            f"deleting identity ({insert_error})"
        )

        try:
            await self.identity_provider.delete_user(identity.id)
        except Exception as e:
            delete_error = error_message(e)
            saga.advance(ProvisioningState.COMPENSATION_FAILED, detail=delete_error)
            compensation_error = CompensationError(
                f"Failed to delete identity {identity.id} after profile insert failure: {delete_error}",
                identity_id=identity.id,
                email=saga.email
            )
            logger.error(
                f"Orphaned identity {identity.id}: compensating delete failed ({delete_error})",
                extra={"identity_id": identity.id, "client_id": saga.client_id}
            )
            log_member_event(
                MemberAuditEvent.COMPENSATION_FAILED, saga.email,
                {"identity_id": identity.id, "client_id": saga.client_id, "error": delete_error},
                success=False
            )
            capture_exception(
                compensation_error,
                identity_id=identity.id,
                client_id=saga.client_id,
                profile_insert_error=insert_error
            )
            return compensation_error

        saga.advance(ProvisioningState.ROLLED_BACK, detail=insert_error)
        log_member_event(
            MemberAuditEvent.ROLLED_BACK, saga.email,
            {"identity_id": identity.id, "client_id": saga.client_id}
        )
        return None


async def authenticate_member(
    identity_provider: PasswordSignIn,
    profile_store: ActiveProfileLookup,
    email: str,
    password: str
) -> Dict[str, Any]:
    """
    Password login for members.

    Signs in at the provider, then requires an active member profile for
    the email. Returns the provider tokens and the profile.

    Raises:
        UnauthorizedError
    """
    if not (email or "").strip() or not password:
        raise UnauthorizedError("Email and password are required")

    email = email.strip().lower()

    try:
        session = await identity_provider.sign_in_with_password(email, password)
    except IdentityProviderError as e:
        log_member_event(MemberAuditEvent.LOGIN, email, {"status_code": e.status_code}, success=False)
        raise UnauthorizedError(e.message)

    account = await profile_store.find_active_member_profile_by_email(email)
    if not account:
        log_member_event(MemberAuditEvent.LOGIN, email, {"reason": "no_active_profile"}, success=False)
        raise UnauthorizedError("Member account not found")

    log_member_event(MemberAuditEvent.LOGIN, email, {"member_account_id": str(account.id)})

    return {
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "token_type": session.token_type,
        "expires_in": session.expires_in,
        "identity": session.identity.to_dict(),
        "member_account": account.to_dict(),
        "client": account.client.to_dict() if account.client else None
    }



async def update_member_account(
    identity_provider: IdentityUpdater,
    profile_store: ProfileUpdater,
    account_id: str,
    email: Optional[str] = None,
    password: Optional[str] = None,
    is_active: Optional[bool] = None
) -> Optional[Any]:
    """
    Update a member's email, password and/or active flag.

    Email and password changes go to the identity provider first; the
    profile row follows. If the profile update fails after the provider
    accepted a new email, the provider email is set back.

    Returns the updated profile, or None if the account does not exist.

    Raises:
        MemberUpdateError
    """
    email = email.strip().lower() if email and email.strip() else None
    if email is None and not password and is_active is None:
        raise MemberUpdateError("Nothing to update")
    if email is not None and not EMAIL_PATTERN.match(email):
        raise MemberUpdateError("Invalid email address")

    account = await profile_store.get_member_profile_by_id(account_id)
    if not account:
        return None

    previous_email = account.email
    email_changed = email is not None and email != previous_email

    if email_changed or password:
        if not account.identity_id:
            raise MemberUpdateError("Member account is not linked to an identity")
        try:
            await identity_provider.update_user(
                account.identity_id,
                email=email if email_changed else None,
                password=password or None
            )
        except Exception as e:
            log_member_event(
                MemberAuditEvent.UPDATED, previous_email,
                {"member_account_id": account_id, "stage": "identity"},
                success=False
            )
            raise MemberUpdateError(error_message(e))

    try:
        updated = await profile_store.update_member_profile(
            account_id,
            email=email if email_changed else None,
            is_active=is_active
        )
    except Exception as e:
        message = error_message(e)
        if email_changed:
            await _revert_identity_email(identity_provider, account.identity_id, previous_email, account_id)
        log_member_event(
            MemberAuditEvent.UPDATED, previous_email,
            {"member_account_id": account_id, "stage": "profile", "error": message},
            success=False
        )
        raise MemberUpdateError(message)

    log_member_event(
        MemberAuditEvent.UPDATED, updated.email,
        {
            "member_account_id": account_id,
            "email_changed": email_changed,
            "password_changed": bool(password),
            "is_active": updated.is_active,
        }
    )
    return updated


async def _revert_identity_email(
    identity_provider: IdentityUpdater,
    identity_id: str,
    previous_email: str,
    account_id: str
):
    try:
        await identity_provider.update_user(identity_id, email=previous_email)
    except Exception as e:
        logger.error(
            f"Identity {identity_id} email out of sync with member account {account_id}: "
            f"revert failed ({error_message(e)})",
            extra={"identity_id": identity_id, "member_account_id": account_id}
        )
        log_member_event(
            MemberAuditEvent.UPDATE_REVERT_FAILED, previous_email,
            {"identity_id": identity_id, "member_account_id": account_id},
            success=False
        )
        capture_exception(e, identity_id=identity_id, member_account_id=account_id)
