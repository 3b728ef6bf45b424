"""
Async database engine and session factory.

The engine is created once per process (application lifespan or worker
run) and shared; each CredentialStore operation opens its own session
from the factory.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from speedfunnels.config.oauth import get_database_url
from speedfunnels.db_base import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine for DATABASE_URL (or an explicit URL)."""
    url = database_url or get_database_url()
    kwargs = {}
    if not url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=10)
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_tables(engine: AsyncEngine) -> None:
    """
    Create missing tables. Intended for local development and tests;
    production schemas are managed by migrations.
    """
    # Register models on the metadata
    import speedfunnels.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
