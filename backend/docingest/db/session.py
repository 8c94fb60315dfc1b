"""
Database engine and session factories.

Nothing is created at import time: main.py builds the engine and the
sessionmaker in its lifespan and keeps them on app.state, and tests build
their own against an in-memory SQLite database. Services receive the
sessionmaker and open their own transactions with ``sessions.begin()``, so
one request can commit several independent transactions (the OCR
processing transition must be durable before the provider call starts).
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docingest.core.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def build_engine(settings: Settings, **overrides: Any) -> AsyncEngine:
    options: dict[str, Any] = {
        "pool_pre_ping": True,          # detect stale connections before use
        "pool_recycle":  3600,          # recycle connections every hour
        "echo":          settings.db_echo_sql,
    }
    if not settings.database_url.startswith("sqlite"):
        options["pool_size"]    = settings.db_pool_size
        options["max_overflow"] = settings.db_max_overflow
    options.update(overrides)

    engine = create_async_engine(settings.database_url, **options)
    logger.info("DB engine created | dialect=%s", engine.dialect.name)
    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
