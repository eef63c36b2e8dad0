from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text, inspect
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


def normalize_database_url(url: str) -> str:
    """Ensure the async driver is used for Postgres URLs."""
    if url.startswith('postgresql://'):
        return url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+asyncpg://', 1)
    return url


def build_engine_options(url: str, sslmode: str = "require") -> dict:
    """Engine options for the given URL; pooling and SSL only apply to Postgres."""
    options = {"echo": False, "pool_pre_ping": True}
    if url.startswith('postgresql'):
        options.update(pool_size=5, max_overflow=10)
        if sslmode and sslmode != "disable":
            options["connect_args"] = {"ssl": sslmode}
    return options


settings = get_settings()
DATABASE_URL = normalize_database_url(settings.get_database_url())

engine = create_async_engine(
    DATABASE_URL,
    **build_engine_options(DATABASE_URL, settings.POSTGRES_SSLMODE)
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


class Base(DeclarativeBase):
    pass


async def get_db():
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(create_tables: bool = False):
    """Initialize database connection and verify tables exist"""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

            if create_tables:
                await conn.run_sync(Base.metadata.create_all)
                logger.info("Ensured member tables exist")

            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            logger.info(f"Available tables: {tables}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
