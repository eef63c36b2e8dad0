"""
Shared test configuration.

Environment is set before any application module is imported so that
config.get_settings() and the database engine pick up test values.
"""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SUPABASE_URL"] = "https://idp.test"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "service-role-test-key"
os.environ["SUPABASE_ANON_KEY"] = "anon-test-key"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-that-is-at-least-32-chars"
os.environ["SENTRY_DSN"] = ""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from jose import jwt
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from database import Base, TrainerDB, ClientDB


@pytest_asyncio.fixture
async def db_session():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def seeded_client(db_session):
    """A trainer with one client whose id is c1."""
    trainer = TrainerDB(id="t1", user_id="trainer-identity-1", email="coach@gym.test", name="Coach")
    client = ClientDB(id="c1", trainer_id="t1", name="Ayla", email="a@x.com")
    db_session.add_all([trainer, client])
    await db_session.commit()
    return client


@pytest.fixture
def make_token():
    """Build a provider-style access token signed with the test secret."""
    def _make(
        user_id: str = "identity-1",
        email: str = "a@x.com",
        audience: str = "authenticated",
        expires_in: int = 3600,
        secret: str = os.environ["SUPABASE_JWT_SECRET"]
    ) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "email": email,
            "role": "authenticated",
            "aud": audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        }
        return jwt.encode(claims, secret, algorithm="HS256")
    return _make
