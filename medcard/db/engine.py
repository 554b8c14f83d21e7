"""Async PostgreSQL engine and session factory.

Documents, batch sessions and pending duplicate decisions all live in the
database; it is the only state shared between requests, so row locks taken
through these sessions are what serialize concurrent batch finishes and
decision resolutions.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from medcard.config import settings

logger = logging.getLogger(__name__)

engine: AsyncEngine = create_async_engine(
    settings.db.database_url,
    echo=settings.log_level == "DEBUG",
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,
    pool_recycle=3600,
)

# Objects stay readable after commit; handlers serialize them afterwards
async_session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(engine, expire_on_commit=False)


async def _prepare_schema() -> None:
    """Check the connection; create tables directly outside production.

    Production schemas come from the alembic migrations.
    """
    import medcard.models  # noqa: F401  (registers every table)
    from medcard.models.base import Base

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if not settings.is_production:
            await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready (create_all=%s)", not settings.is_production)


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Open the engine for the application's lifetime and dispose it on exit."""
    await _prepare_schema()
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Database engine disposed")
