"""
Unit Tests for Member Provisioning

Tests the create-identity-then-insert-profile saga:
- Successful provisioning
- Validation failures (no side effects)
- Identity creation failure (no profile, no compensation)
- Profile insert failure (compensating delete exactly once)
- Compensation failure (orphan reported, insert error surfaced)
- Unexpected collaborator errors (same saga outcomes)
- Member login and member account updates

Run with: pytest tests/test_provisioning.py -v
"""

import logging
import pytest
import pytest_asyncio
from unittest.mock import patch

from members.errors import (
    MemberValidationError,
    IdentityCreationError,
    ProfileInsertError,
    CompensationError,
    UnauthorizedError,
    MemberUpdateError,
)
from members.models import ProvisioningState
from members.profile_store import MemberProfileStore
from members.provisioning import (
    MemberProvisioningService,
    ProvisioningSaga,
    authenticate_member,
    update_member_account,
    mask_email,
)
from members.session import resolve_member_session
from services.auth import AuthUser

from fakes import FakeIdentityProvider, FakeProfileStore


class TestProvisionSuccess:
    """Both collaborators succeed."""

    @pytest.fixture
    def provider(self):
        return FakeIdentityProvider()

    @pytest.fixture
    def store(self):
        store = FakeProfileStore()
        store.add_client("c1")
        return store

    @pytest.fixture
    def service(self, provider, store):
        return MemberProvisioningService(provider, store)

    @pytest.mark.asyncio
    async def test_provision_creates_identity_and_profile(self, service, provider, store):
        result = await service.provision("a@x.com", "secret123", "c1")

        assert len(provider.identities) == 1
        assert len(store.accounts) == 1

        account = store.accounts[0]
        assert account.client_id == "c1"
        assert account.email == "a@x.com"
        assert account.is_active is True

        assert result.identity_id == provider.identity_for("a@x.com").id
        assert result.member_account_id == account.id
        assert result.client_id == "c1"

    @pytest.mark.asyncio
    async def test_identity_is_pre_confirmed(self, service, provider):
        await service.provision("a@x.com", "secret123", "c1")
        assert provider.identity_for("a@x.com").email_confirmed is True

    @pytest.mark.asyncio
    async def test_identity_created_before_profile(self, service, provider, store):
        await service.provision("a@x.com", "secret123", "c1")

        assert provider.calls == [("create", "a@x.com")]
        assert store.calls == [("insert", "a@x.com")]

    @pytest.mark.asyncio
    async def test_saga_reaches_profile_inserted(self, service):
        await service.provision("a@x.com", "secret123", "c1")

        saga = service.last_saga
        assert saga.state == ProvisioningState.PROFILE_INSERTED
        assert saga.history == ["started", "identity_created", "profile_inserted"]
        assert saga.finished is True

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, service, provider, store):
        await service.provision("  A@X.com ", "secret123", " c1 ")

        assert provider.calls == [("create", "a@x.com")]
        assert store.accounts[0].email == "a@x.com"
        assert store.accounts[0].client_id == "c1"


class TestProvisionValidation:
    """Missing or malformed fields never reach a collaborator."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password,client_id", [
        (None, "secret123", "c1"),
        ("a@x.com", None, "c1"),
        ("a@x.com", "secret123", None),
        ("", "secret123", "c1"),
        ("a@x.com", "", "c1"),
        ("a@x.com", "secret123", "   "),
    ])
    async def test_missing_field_rejected(self, email, password, client_id):
        provider = FakeIdentityProvider()
        store = FakeProfileStore()
        service = MemberProvisioningService(provider, store)

        with pytest.raises(MemberValidationError) as exc_info:
            await service.provision(email, password, client_id)

        assert exc_info.value.message == "Email, password, and clientId are required"
        assert provider.calls == []
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_malformed_email_rejected(self):
        provider = FakeIdentityProvider()
        store = FakeProfileStore()
        service = MemberProvisioningService(provider, store)

        with pytest.raises(MemberValidationError):
            await service.provision("not-an-email", "secret123", "c1")

        assert provider.calls == []
        assert store.calls == []


class TestIdentityCreationFailure:

    @pytest.mark.asyncio
    async def test_no_profile_and_no_compensation(self):
        provider = FakeIdentityProvider(create_error="Email address already registered")
        store = FakeProfileStore()
        service = MemberProvisioningService(provider, store)

        with pytest.raises(IdentityCreationError) as exc_info:
            await service.provision("a@x.com", "secret123", "c1")

        assert exc_info.value.message == "Email address already registered"
        assert store.calls == []
        assert provider.calls == [("create", "a@x.com")]
        assert service.last_saga.state == ProvisioningState.STARTED

    @pytest.mark.asyncio
    async def test_second_provision_for_same_email_rejected_by_provider(self):
        provider = FakeIdentityProvider()
        store = FakeProfileStore()
        service = MemberProvisioningService(provider, store)

        await service.provision("a@x.com", "secret123", "c1")
        with pytest.raises(IdentityCreationError):
            await service.provision("a@x.com", "other-pass", "c2")

        assert len(provider.identities) == 1
        assert len(store.accounts) == 1


class TestProfileInsertFailure:
    """Identity created, profile rejected: the identity is deleted again."""

    @pytest.mark.asyncio
    async def test_duplicate_key_rolls_back_identity(self):
        provider = FakeIdentityProvider()
        store = FakeProfileStore(insert_error="duplicate key")
        service = MemberProvisioningService(provider, store)

        with pytest.raises(ProfileInsertError) as exc_info:
            await service.provision("a@x.com", "secret123", "c1")

        assert exc_info.value.message == "duplicate key"
        assert exc_info.value.compensation_error is None
        assert exc_info.value.identity_orphaned is False

        created_id = service.last_saga.identity.id
        assert provider.calls == [("create", "a@x.com"), ("delete", created_id)]
        assert provider.identities == {}
        assert store.accounts == []

    @pytest.mark.asyncio
    async def test_compensating_delete_called_exactly_once(self):
        provider = FakeIdentityProvider()
        store = FakeProfileStore(insert_error="insert or update violates foreign key constraint")
        service = MemberProvisioningService(provider, store)

        with pytest.raises(ProfileInsertError):
            await service.provision("a@x.com", "secret123", "missing-client")

        deletes = [call for call in provider.calls if call[0] == "delete"]
        assert len(deletes) == 1

    @pytest.mark.asyncio
    async def test_saga_rolled_back(self):
        provider = FakeIdentityProvider()
        store = FakeProfileStore(insert_error="duplicate key")
        service = MemberProvisioningService(provider, store)

        with pytest.raises(ProfileInsertError):
            await service.provision("a@x.com", "secret123", "c1")

        saga = service.last_saga
        assert saga.state == ProvisioningState.ROLLED_BACK
        assert saga.history == ["started", "identity_created", "rolled_back"]


class TestCompensationFailure:
    """Profile insert and compensating delete both fail."""

    @pytest.mark.asyncio
    async def test_insert_error_still_surfaced(self):
        provider = FakeIdentityProvider(delete_error="Database error deleting user")
        store = FakeProfileStore(insert_error="duplicate key")
        service = MemberProvisioningService(provider, store)

        with patch("members.provisioning.capture_exception") as mock_capture:
            with pytest.raises(ProfileInsertError) as exc_info:
                await service.provision("a@x.com", "secret123", "c1")

        error = exc_info.value
        assert error.message == "duplicate key"
        assert error.identity_orphaned is True
        assert isinstance(error.compensation_error, CompensationError)
        assert error.compensation_error.identity_id == service.last_saga.identity.id
        mock_capture.assert_called_once()

    @pytest.mark.asyncio
    async def test_orphan_logged_at_error(self, caplog):
        provider = FakeIdentityProvider(delete_error="Database error deleting user")
        store = FakeProfileStore(insert_error="duplicate key")
        service = MemberProvisioningService(provider, store)

        with caplog.at_level(logging.ERROR, logger="members.provisioning"):
            with pytest.raises(ProfileInsertError):
                await service.provision("a@x.com", "secret123", "c1")

        orphan_id = service.last_saga.identity.id
        assert any(
            record.levelno == logging.ERROR and orphan_id in record.getMessage()
            for record in caplog.records
        )

    @pytest.mark.asyncio
    async def test_no_retry_of_failed_delete(self):
        provider = FakeIdentityProvider(delete_error="Database error deleting user")
        store = FakeProfileStore(insert_error="duplicate key")
        service = MemberProvisioningService(provider, store)

        with pytest.raises(ProfileInsertError):
            await service.provision("a@x.com", "secret123", "c1")

        assert [c[0] for c in provider.calls] == ["create", "delete"]
        assert service.last_saga.state == ProvisioningState.COMPENSATION_FAILED
        # the orphan is still at the provider
        assert provider.identity_for("a@x.com") is not None


class TestProvisioningSaga:

    def test_starts_in_started_state(self):
        saga = ProvisioningSaga(email="a@x.com", client_id="c1")
        assert saga.state == ProvisioningState.STARTED
        assert saga.history == ["started"]
        assert saga.finished is False

    def test_cannot_skip_identity_creation(self):
        saga = ProvisioningSaga(email="a@x.com", client_id="c1")
        with pytest.raises(RuntimeError):
            saga.advance(ProvisioningState.PROFILE_INSERTED)

    def test_terminal_state_is_final(self):
        saga = ProvisioningSaga(email="a@x.com", client_id="c1")
        saga.advance(ProvisioningState.IDENTITY_CREATED)
        saga.advance(ProvisioningState.ROLLED_BACK)

        assert saga.finished is True
        with pytest.raises(RuntimeError):
            saga.advance(ProvisioningState.PROFILE_INSERTED)


class TestProvisionRoundTrip:
    """Provision into the real profile store, then resolve the session."""

    @pytest.mark.asyncio
    async def test_session_matches_inserted_profile(self, db_session, seeded_client):
        provider = FakeIdentityProvider()
        store = MemberProfileStore(db_session)
        service = MemberProvisioningService(provider, store)

        result = await service.provision("a@x.com", "secret123", "c1")

        user = AuthUser(id=result.identity_id, email="a@x.com")
        session = await resolve_member_session(user, store)

        assert session is not None
        assert session.identity_id == result.identity_id
        assert session.profile["id"] == result.member_account_id
        assert session.profile["client_id"] == "c1"
        assert session.profile["email"] == "a@x.com"
        assert session.profile["is_active"] is True
        assert session.client["id"] == "c1"
        assert session.client["name"] == "Ayla"

    @pytest.mark.asyncio
    async def test_store_failure_leaves_no_rows(self, db_session, seeded_client):
        provider = FakeIdentityProvider()
        store = MemberProfileStore(db_session)
        service = MemberProvisioningService(provider, store)

        await service.provision("a@x.com", "secret123", "c1")

        # Same email again at a different provider account: the unique
        # index on member_accounts.email rejects the profile
        other_provider = FakeIdentityProvider()
        other_service = MemberProvisioningService(other_provider, store)
        with pytest.raises(ProfileInsertError):
            await other_service.provision("a@x.com", "secret123", "c1")

        assert other_provider.identities == {}
        assert await store.is_email_in_use("a@x.com") is True


class TestAuthenticateMember:

    @pytest.fixture
    def provider(self):
        return FakeIdentityProvider()

    @pytest.fixture
    def store(self):
        store = FakeProfileStore()
        store.add_client("c1", name="Ayla")
        return store

    @pytest.mark.asyncio
    async def test_login_returns_tokens_and_profile(self, provider, store):
        await MemberProvisioningService(provider, store).provision("a@x.com", "secret123", "c1")

        result = await authenticate_member(provider, store, "A@x.com", "secret123")

        assert result["access_token"] == "access-token"
        assert result["member_account"]["email"] == "a@x.com"
        assert result["client"]["name"] == "Ayla"
        assert "password_hash" not in result["member_account"]

    @pytest.mark.asyncio
    async def test_wrong_password(self, provider, store):
        await MemberProvisioningService(provider, store).provision("a@x.com", "secret123", "c1")

        with pytest.raises(UnauthorizedError) as exc_info:
            await authenticate_member(provider, store, "a@x.com", "wrong")

        assert exc_info.value.message == "Invalid login credentials"

    @pytest.mark.asyncio
    async def test_deactivated_member_rejected(self, provider, store):
        await MemberProvisioningService(provider, store).provision("a@x.com", "secret123", "c1")
        await store.deactivate_member_profile(store.accounts[0].id)

        with pytest.raises(UnauthorizedError) as exc_info:
            await authenticate_member(provider, store, "a@x.com", "secret123")

        assert exc_info.value.message == "Member account not found"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, provider, store):
        with pytest.raises(UnauthorizedError):
            await authenticate_member(provider, store, "", "secret123")
        assert provider.calls == []


def test_mask_email():
    assert mask_email("ayla@gym.test") == "a***@gym.test"
    assert mask_email("broken") == "***"


class TestUnexpectedCollaboratorFailures:
    """Errors outside the collaborators' own types still follow the saga."""

    @pytest.mark.asyncio
    async def test_unexpected_identity_error_becomes_creation_error(self):
        provider = FakeIdentityProvider(create_error=RuntimeError("socket closed"))
        store = FakeProfileStore()
        service = MemberProvisioningService(provider, store)

        with pytest.raises(IdentityCreationError) as exc_info:
            await service.provision("a@x.com", "secret123", "c1")

        assert exc_info.value.message == "socket closed"
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_store_error_still_compensates(self):
        provider = FakeIdentityProvider()
        store = FakeProfileStore(insert_error=RuntimeError("pool exhausted"))
        service = MemberProvisioningService(provider, store)

        with pytest.raises(ProfileInsertError) as exc_info:
            await service.provision("a@x.com", "secret123", "c1")

        assert exc_info.value.message == "pool exhausted"
        assert [c[0] for c in provider.calls] == ["create", "delete"]
        assert provider.identities == {}
        assert service.last_saga.state == ProvisioningState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_unexpected_delete_error_keeps_insert_error(self):
        provider = FakeIdentityProvider(delete_error=RuntimeError("connection reset"))
        store = FakeProfileStore(insert_error="duplicate key")
        service = MemberProvisioningService(provider, store)

        with patch("members.provisioning.capture_exception") as mock_capture:
            with pytest.raises(ProfileInsertError) as exc_info:
                await service.provision("a@x.com", "secret123", "c1")

        error = exc_info.value
        assert error.message == "duplicate key"
        assert error.identity_orphaned is True
        assert "connection reset" in error.compensation_error.message
        assert service.last_saga.state == ProvisioningState.COMPENSATION_FAILED
        mock_capture.assert_called_once()

    @pytest.mark.asyncio
    async def test_profile_linked_to_created_identity(self):
        provider = FakeIdentityProvider()
        store = FakeProfileStore()
        store.add_client("c1")

        result = await MemberProvisioningService(provider, store).provision("a@x.com", "secret123", "c1")

        assert store.accounts[0].identity_id == result.identity_id


class TestUpdateMemberAccount:

    @pytest.fixture
    def provider(self):
        return FakeIdentityProvider()

    @pytest.fixture
    def store(self):
        store = FakeProfileStore()
        store.add_client("c1", name="Ayla")
        return store

    @pytest_asyncio.fixture
    async def account(self, provider, store):
        await MemberProvisioningService(provider, store).provision("a@x.com", "secret123", "c1")
        return store.accounts[0]

    @pytest.mark.asyncio
    async def test_email_change_goes_through_provider(self, provider, store, account):
        updated = await update_member_account(provider, store, account.id, email="New@X.com")

        assert updated.email == "new@x.com"
        assert provider.identities[account.identity_id].email == "new@x.com"
        assert provider.calls[-1] == ("update", account.identity_id)
        assert store.calls[-1] == ("update", account.id)

    @pytest.mark.asyncio
    async def test_password_change_allows_new_login(self, provider, store, account):
        await update_member_account(provider, store, account.id, password="changed-pass")

        result = await authenticate_member(provider, store, "a@x.com", "changed-pass")
        assert result["member_account"]["id"] == account.id

    @pytest.mark.asyncio
    async def test_active_flag_only_skips_provider(self, provider, store, account):
        calls_before = list(provider.calls)

        updated = await update_member_account(provider, store, account.id, is_active=False)

        assert updated.is_active is False
        assert provider.calls == calls_before

    @pytest.mark.asyncio
    async def test_provider_rejection_leaves_profile(self, store, account, provider):
        provider.update_error = "Email address already registered"

        with pytest.raises(MemberUpdateError) as exc_info:
            await update_member_account(provider, store, account.id, email="b@x.com")

        assert exc_info.value.message == "Email address already registered"
        assert account.email == "a@x.com"
        assert ("update", account.id) not in store.calls

    @pytest.mark.asyncio
    async def test_store_failure_reverts_provider_email(self, provider, store, account):
        store.update_error = "duplicate key"

        with pytest.raises(MemberUpdateError) as exc_info:
            await update_member_account(provider, store, account.id, email="b@x.com")

        assert exc_info.value.message == "duplicate key"
        assert provider.identities[account.identity_id].email == "a@x.com"
        assert [c for c in provider.calls if c[0] == "update"] == [
            ("update", account.identity_id),
            ("update", account.identity_id),
        ]

    @pytest.mark.asyncio
    async def test_unknown_account(self, provider, store):
        assert await update_member_account(provider, store, "missing", is_active=False) is None

    @pytest.mark.asyncio
    async def test_nothing_to_update(self, provider, store, account):
        with pytest.raises(MemberUpdateError):
            await update_member_account(provider, store, account.id)

    @pytest.mark.asyncio
    async def test_invalid_email(self, provider, store, account):
        with pytest.raises(MemberUpdateError) as exc_info:
            await update_member_account(provider, store, account.id, email="not-an-email")
        assert exc_info.value.message == "Invalid email address"

    @pytest.mark.asyncio
    async def test_unlinked_profile_cannot_change_credentials(self, provider, store):
        account = await store.insert_member_profile("c1", "legacy@x.com")

        with pytest.raises(MemberUpdateError) as exc_info:
            await update_member_account(provider, store, account.id, password="changed-pass")

        assert exc_info.value.message == "Member account is not linked to an identity"
