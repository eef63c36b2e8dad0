"""
Member Portal - Database Models

Tables:
- trainers: Business owners using the trainer dashboard
- clients: Trainees belonging to a trainer
- member_accounts: Member login profiles linked to a client

Passwords are owned by the identity provider; member_accounts only keeps
a marker in password_hash.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Any

from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey
)
from sqlalchemy.orm import relationship

from database.connection import Base

# Stored in member_accounts.password_hash; the provider holds the real credential
PASSWORD_HANDLED_BY_AUTH = "handled_by_auth"


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TrainerDB(Base):
    """
    Trainer - dashboard user.

    user_id references the provider identity that signs in as this trainer.
    """
    __tablename__ = "trainers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    clients = relationship("ClientDB", back_populates="trainer")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }


class ClientDB(Base):
    """
    Client - a trainee record owned by a trainer (the owning business record
    of a member account).
    """
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    trainer_id = Column(String(36), ForeignKey("trainers.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50))
    email = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=utc_now)

    trainer = relationship("TrainerDB", back_populates="clients")
    member_account = relationship("MemberAccountDB", back_populates="client", uselist=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "trainer_id": self.trainer_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }


class MemberAccountDB(Base):
    """
    Member Account - the member profile half of a provisioned member.

    Email is unique and is the lookup key used to join an authenticated
    identity back to its profile.
    """
    __tablename__ = "member_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    # Provider identity created together with this profile; NULL for rows created outside provisioning
    identity_id = Column(String(36), nullable=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False, default=PASSWORD_HANDLED_BY_AUTH)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    client = relationship("ClientDB", back_populates="member_account")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (password marker omitted)."""
        return {
            "id": self.id,
            "client_id": self.client_id,
            "identity_id": self.identity_id,
            "email": self.email,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }
