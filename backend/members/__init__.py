"""
Member Accounts Module

Member provisioning for the trainer/member portal.

Features:
- Member account creation (identity + member profile, with rollback)
- Member password login
- Member account updates (email, password, active flag)
- Member session resolution and portal route guards
"""

from .errors import (
    ProvisionError,
    MemberValidationError,
    IdentityCreationError,
    ProfileInsertError,
    CompensationError,
    UnauthorizedError,
    MemberUpdateError,
)
from .models import MemberSession, ProvisioningState, RouteDecision
from .identity_provider import IdentityProviderClient
from .profile_store import MemberProfileStore
from .provisioning import MemberProvisioningService, ProvisioningSaga, update_member_account
from .session import (
    resolve_member_session,
    require_member_session,
    is_member_route,
    is_trainer_route,
    evaluate_route_access,
)

__all__ = [
    'ProvisionError',
    'MemberValidationError',
    'IdentityCreationError',
    'ProfileInsertError',
    'CompensationError',
    'UnauthorizedError',
    'MemberUpdateError',
    'MemberSession',
    'ProvisioningState',
    'RouteDecision',
    'IdentityProviderClient',
    'MemberProfileStore',
    'MemberProvisioningService',
    'ProvisioningSaga',
    'update_member_account',
    'resolve_member_session',
    'require_member_session',
    'is_member_route',
    'is_trainer_route',
    'evaluate_route_access',
]
