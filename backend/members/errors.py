"""
Member Accounts - Errors

ProvisionError subclasses are what the create-member endpoint turns into
a 400 {"error": message}. UnauthorizedError is raised by session
resolution and handled by route guards.
"""

from typing import Optional


class ProvisionError(Exception):
    """Base class for member provisioning failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MemberValidationError(ProvisionError):
    """Missing or malformed request fields. Nothing was created."""


class IdentityCreationError(ProvisionError):
    """The identity provider rejected the create. Nothing was created."""


class CompensationError(ProvisionError):
    """
    The compensating identity delete failed.

    The identity with identity_id is orphaned (no member profile).
    """

    def __init__(self, message: str, identity_id: str, email: str):
        super().__init__(message)
        self.identity_id = identity_id
        self.email = email


class ProfileInsertError(ProvisionError):
    """
    The profile store rejected the insert after the identity was created.

    compensation_error is set when the rollback delete failed as well.
    """

    def __init__(self, message: str, compensation_error: Optional[CompensationError] = None):
        super().__init__(message)
        self.compensation_error = compensation_error

    @property
    def identity_orphaned(self) -> bool:
        return self.compensation_error is not None


class UnauthorizedError(Exception):
    """No authenticated member for the caller."""

    def __init__(self, message: str = "Unauthorized - Member access required"):
        super().__init__(message)
        self.message = message


class IdentityProviderError(Exception):
    """Error returned by the identity provider API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ProfileStoreError(Exception):
    """Error raised by the member profile store."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MemberUpdateError(Exception):
    """A member account update was rejected by the provider or the store."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
