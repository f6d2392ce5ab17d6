"""
Enrollment Directory Database

Engine and session factories for the SQL table that backs the enrollment
directory. Production runs PostgreSQL through asyncpg; the same helpers
build SQLite engines (aiosqlite) for local runs and tests, where the pool
size options do not apply.

The module-level ``engine`` and ``async_session_maker`` are what the service
uses when it owns its database. Callers that bring their own engine pass it
to ``init_db`` as ``bind``.
"""
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
import logging

from biomatch.config import DATABASE_URL, DB_POOL_SIZE, DB_MAX_OVERFLOW

logger = logging.getLogger(__name__)

# Base class for the enrollment ORM models
Base = declarative_base()


def build_engine(url: str = DATABASE_URL, **overrides) -> AsyncEngine:
    """
    Create an async engine for the enrollment directory.

    Args:
        url: SQLAlchemy URL (postgresql+asyncpg://... or sqlite+aiosqlite://...)
        **overrides: Extra create_async_engine options, e.g. poolclass

    Returns:
        AsyncEngine
    """
    options = {"echo": False, "pool_pre_ping": True}
    if make_url(url).get_backend_name() != "sqlite" and "poolclass" not in overrides:
        options.update(pool_size=DB_POOL_SIZE, max_overflow=DB_MAX_OVERFLOW)
    options.update(overrides)
    return create_async_engine(url, **options)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
async_session_maker = build_session_maker(engine)


async def create_schema(bind: AsyncEngine):
    """Create the enrollments table if it is missing."""
    # Import registers the models on Base.metadata
    from biomatch import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(create_tables: bool = False, bind: Optional[AsyncEngine] = None):
    """
    Check that the enrollment directory is reachable.

    Args:
        create_tables: Also create the enrollments table when missing
        bind: Engine to use instead of the module-level one

    Raises:
        Whatever the driver raises when the database cannot be reached
    """
    bind = bind or engine
    try:
        async with bind.connect() as conn:
            await conn.execute(text("SELECT 1"))
        if create_tables:
            await create_schema(bind)
        logger.info(f"Enrollment directory reachable at {bind.url.render_as_string(hide_password=True)}")
    except Exception as e:
        logger.error(f"Failed to connect to enrollment directory: {e}")
        raise


async def close_db(bind: Optional[AsyncEngine] = None):
    """Dispose of the connection pool."""
    await (bind or engine).dispose()
    logger.info("Enrollment directory connection pool closed")
