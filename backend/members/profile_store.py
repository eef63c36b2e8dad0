"""
Member Profile Store

All reads and writes of member_accounts go through MemberProfileStore.
It never calls the identity provider; the provisioning saga pairs the two.
"""

import logging
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.member_models import (
    MemberAccountDB,
    TrainerDB,
    PASSWORD_HANDLED_BY_AUTH,
)

from .errors import ProfileStoreError

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemberProfileStore:
    """Profile Store Client backed by the relational database."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== WRITES ====================

    async def insert_member_profile(
        self,
        client_id: str,
        email: str,
        active: bool = True,
        identity_id: Optional[str] = None
    ) -> MemberAccountDB:
        """
        Insert a member profile for a client.

        Raises:
            ProfileStoreError: the row could not be written (duplicate
                email, unknown client, connection failure)
        """
        account = MemberAccountDB(
            client_id=client_id,
            identity_id=identity_id,
            email=normalize_email(email),
            password_hash=PASSWORD_HANDLED_BY_AUTH,
            is_active=active
        )
        self.db.add(account)

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            message = str(e.orig) if e.orig is not None else str(e)
            logger.warning(f"Member profile insert rejected for client {client_id}: {message}")
            raise ProfileStoreError(message)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Member profile insert failed for client {client_id}: {e}")
            raise ProfileStoreError(str(e))

        await self.db.refresh(account)
        logger.info(f"Member profile created: {account.id} (client {client_id})")
        return account

    async def update_member_profile(
        self,
        account_id: str,
        email: Optional[str] = None,
        is_active: Optional[bool] = None
    ) -> Optional[MemberAccountDB]:
        """
        Update email and/or is_active. Returns None if the account does not exist.

        Raises:
            ProfileStoreError: the new email is already used by another profile
        """
        account = await self.get_member_profile_by_id(account_id)
        if not account:
            return None

        if email is not None:
            account.email = normalize_email(email)
        if is_active is not None:
            account.is_active = is_active

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            message = str(e.orig) if e.orig is not None else str(e)
            logger.warning(f"Member profile update rejected for {account_id}: {message}")
            raise ProfileStoreError(message)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise ProfileStoreError(str(e))

        await self.db.refresh(account)
        logger.info(f"Member profile updated: {account_id}")
        return account

    async def deactivate_member_profile(self, account_id: str) -> Optional[MemberAccountDB]:
        """Set is_active=False. Returns None if the account does not exist."""
        try:
            account = await self.get_member_profile_by_id(account_id)
            if not account:
                return None

            account.is_active = False
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise ProfileStoreError(str(e))

        await self.db.refresh(account)
        logger.info(f"Member profile deactivated: {account_id}")
        return account

    # ==================== READS ====================

    async def find_member_profile_by_email(self, email: str) -> Optional[MemberAccountDB]:
        """Find a profile by email (case-insensitive), with its client loaded."""
        try:
            result = await self.db.execute(
                select(MemberAccountDB)
                .options(selectinload(MemberAccountDB.client))
                .where(func.lower(MemberAccountDB.email) == normalize_email(email))
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            raise ProfileStoreError(str(e))
        return result.scalars().first()

    async def get_member_profile_by_id(self, account_id: str) -> Optional[MemberAccountDB]:
        try:
            result = await self.db.execute(
                select(MemberAccountDB).where(MemberAccountDB.id == account_id)
            )
        except SQLAlchemyError as e:
            raise ProfileStoreError(str(e))
        return result.scalar_one_or_none()

    async def find_active_member_profile_by_email(self, email: str) -> Optional[MemberAccountDB]:
        """Like find_member_profile_by_email, but ignores deactivated profiles."""
        account = await self.find_member_profile_by_email(email)
        if account and account.is_active:
            return account
        return None

    async def get_member_profile_by_client_id(self, client_id: str) -> Optional[MemberAccountDB]:
        try:
            result = await self.db.execute(
                select(MemberAccountDB).where(MemberAccountDB.client_id == client_id)
            )
        except SQLAlchemyError as e:
            raise ProfileStoreError(str(e))
        return result.scalars().first()

    async def is_email_in_use(self, email: str) -> bool:
        try:
            result = await self.db.execute(
                select(func.count(MemberAccountDB.id))
                .where(func.lower(MemberAccountDB.email) == normalize_email(email))
            )
        except SQLAlchemyError as e:
            raise ProfileStoreError(str(e))
        return (result.scalar() or 0) > 0

    async def find_trainer_by_user_id(self, user_id: str) -> Optional[TrainerDB]:
        """Trainer record for an identity, used by the dashboard guard."""
        try:
            result = await self.db.execute(
                select(TrainerDB).where(TrainerDB.user_id == user_id)
            )
        except SQLAlchemyError as e:
            raise ProfileStoreError(str(e))
        return result.scalar_one_or_none()
