"""
Member Portal Tables Migration Script

Creates the tables used by member provisioning:
- trainers
- clients
- member_accounts

Run: python create_member_tables.py
"""

import asyncio
import logging

from database import engine, Base

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def create_tables():
    """Create all member portal tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Tables ensured: {', '.join(sorted(Base.metadata.tables))}")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(create_tables())
