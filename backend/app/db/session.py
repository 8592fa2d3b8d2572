"""
Database session management.

get_admin_db() is the session scope used by Celery stages and maintenance
tasks: committed on clean exit and rolled back on exception. Code inside
the block may commit earlier (JobChainDispatcher.start_job does, before it
publishes a chain); later statements autobegin a fresh transaction.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": settings.db_echo_sql}
    if settings.db_null_pool:
        # Pooled asyncpg connections are bound to the loop that opened them
        kwargs["poolclass"] = NullPool
    elif not url.startswith("sqlite"):
        # SQLite uses a static/null pool; pool sizing only applies to server DBs
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return kwargs


engine: AsyncEngine = create_async_engine(
    settings.database_url,
    **_engine_kwargs(settings.database_url),
)

# expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# Worker session scope
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_admin_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for background stages and maintenance jobs.

    Never expose this to request handlers directly.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by the worker health-check task."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
