"""
Member Accounts - Domain Models

Plain data carried between the identity provider client, the profile
store and the provisioning saga. Database tables live in
database.member_models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class ProvisioningState(str, Enum):
    """States of one member provisioning saga."""
    STARTED = "started"
    IDENTITY_CREATED = "identity_created"
    PROFILE_INSERTED = "profile_inserted"
    ROLLED_BACK = "rolled_back"
    COMPENSATION_FAILED = "compensation_failed"


# Allowed transitions; anything else is a programming error
PROVISIONING_TRANSITIONS = {
    ProvisioningState.STARTED: {ProvisioningState.IDENTITY_CREATED},
    ProvisioningState.IDENTITY_CREATED: {
        ProvisioningState.PROFILE_INSERTED,
        ProvisioningState.ROLLED_BACK,
        ProvisioningState.COMPENSATION_FAILED,
    },
    ProvisioningState.PROFILE_INSERTED: set(),
    ProvisioningState.ROLLED_BACK: set(),
    ProvisioningState.COMPENSATION_FAILED: set(),
}


@dataclass
class Identity:
    """An identity record held by the identity provider."""
    id: str
    email: str
    email_confirmed: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_provider(cls, data: Dict[str, Any]) -> "Identity":
        """Build from a provider user payload."""
        created_at = data.get("created_at")
        return cls(
            id=str(data["id"]),
            email=data.get("email", ""),
            email_confirmed=bool(data.get("email_confirmed_at") or data.get("confirmed_at")),
            created_at=datetime.fromisoformat(created_at.replace("Z", "+00:00")) if created_at else None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "email_confirmed": self.email_confirmed,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }


@dataclass
class ProviderSession:
    """Tokens returned by a password sign-in."""
    access_token: str
    token_type: str
    expires_in: int
    refresh_token: Optional[str]
    identity: Identity


@dataclass
class ProvisionResult:
    """Outcome of a successful provisioning."""
    identity_id: str
    member_account_id: str
    client_id: str
    email: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "member_account_id": self.member_account_id,
            "client_id": self.client_id,
            "email": self.email
        }


@dataclass
class MemberSession:
    """
    Authenticated identity joined with its member profile and owning client.

    Built per request and never stored.
    """
    identity_id: str
    email: str
    profile: Dict[str, Any]
    client: Optional[Dict[str, Any]] = None
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return bool(self.profile.get("is_active"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "email": self.email,
            "member_account": self.profile,
            "client": self.client,
            "resolved_at": self.resolved_at.isoformat()
        }


@dataclass
class RouteDecision:
    """Guard outcome for a portal path."""
    path: str
    allowed: bool
    redirect_to: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "allowed": self.allowed,
            "redirect_to": self.redirect_to,
            "reason": self.reason
        }


@dataclass
class SagaStep:
    """One recorded state transition."""
    state: ProvisioningState
    at: datetime
    detail: Optional[str] = None

