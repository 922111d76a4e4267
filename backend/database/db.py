"""
Async database engine and session management.

Usage:
    from backend.database.db import async_db_session

    async with async_db_session() as session:
        result = await session.execute(select(BillingUser))
"""

import logging

from sqlalchemy import URL
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from backend.common.model import MappedBase
from backend.core.conf import settings

logger = logging.getLogger(__name__)


def create_database_url() -> URL | str:
    """Build the SQLAlchemy URL from settings."""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return URL.create(
        drivername='postgresql+asyncpg',
        username=settings.DATABASE_USER,
        password=settings.DATABASE_PASSWORD,
        host=settings.DATABASE_HOST,
        port=settings.DATABASE_PORT,
        database=settings.DATABASE_SCHEMA,
    )


def create_async_engine_and_session(url: URL | str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the async engine and its session factory."""
    options = {
        'echo': settings.DATABASE_ECHO,
        'echo_pool': settings.DATABASE_POOL_ECHO,
        'future': True,
        'pool_pre_ping': True,
    }
    if not str(url).startswith('sqlite'):
        options.update(pool_size=settings.DATABASE_POOL_SIZE, max_overflow=settings.DATABASE_MAX_OVERFLOW)

    engine = create_async_engine(url, **options)
    db_session = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    return engine, db_session


async def create_tables() -> None:
    """Create all registered tables (development only, production uses alembic)."""
    from backend.src.billing.storage import models  # noqa: F401

    async with async_engine.begin() as conn:
        await conn.run_sync(MappedBase.metadata.create_all)
    logger.info('[DATABASE] Tables created')


SQLALCHEMY_DATABASE_URL = create_database_url()

async_engine, async_db_session = create_async_engine_and_session(SQLALCHEMY_DATABASE_URL)
