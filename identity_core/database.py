"""
Database engine and session management (SQLAlchemy 2.0 async).

All control-plane access goes through the async session returned by
get_db_session(). Tenant databases are reached through
identity_core.db.tenant_connections instead.

Design decisions:
- All control-plane models import Base from here to keep metadata centralized
- Session is committed/rolled back by the FastAPI dependency, not by
  individual service functions - this makes transaction boundaries explicit
- JSON columns use the generic sqlalchemy.JSON type so the same models run on
  PostgreSQL (asyncpg) and SQLite (aiosqlite)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from identity_core.config import Settings, get_settings
from identity_core.db.pool import create_engine_with_pool

log = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all control-plane ORM models.

    Centralizing the metadata here ensures Alembic can discover all tables
    by importing this module.
    """

    type_annotation_map: dict[Any, Any] = {}


# Module-level singletons, initialized in lifespan
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None) -> None:
    """Initialize the database engine and session factory.

    Called once during application startup.
    """
    global _engine, _session_factory
    cfg = settings or get_settings()
    _engine = create_engine_with_pool(cfg.database_url, echo=cfg.db_echo_sql)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )
    log.info("database.initialized", url=cfg.database_url.split("@")[-1])


async def close_db() -> None:
    """Dispose the engine and release all connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        log.info("database.closed")
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a database session.

    Commits on success, rolls back on any exception.

    Usage:
        @router.get("/foo")
        async def endpoint(db: AsyncSession = Depends(get_db_session)):
            ...
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
