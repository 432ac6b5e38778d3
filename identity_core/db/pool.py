"""
Async SQLAlchemy engine factory with connection pool configuration.

Used for both the control-plane engine and the per-tenant engines built by
identity_core.db.tenant_connections. Tenant engines pass a small pool_size
so that many tenants can be reached without exhausting server connections.

Pool sizing:
  - POOL_SIZE=5          baseline connections for the control plane
  - POOL_MAX_OVERFLOW=10 burst headroom
  - POOL_TIMEOUT=30      seconds to wait for a connection before raising
  - POOL_RECYCLE=300     recycle connections every 5 minutes
  - pool_pre_ping=True   detect dead connections before checkout

SQLite URLs (tests, single-node deployments) get SQLAlchemy's default pool
for the dialect; the sizing arguments do not apply there.

Pool event logging:
  SQLAlchemy pool events are emitted via structlog so they appear in the same
  structured log stream as the rest of the application.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

log = structlog.get_logger(__name__)

POOL_SIZE: int = 5
POOL_MAX_OVERFLOW: int = 10
POOL_TIMEOUT: int = 30
POOL_RECYCLE: int = 300


def _attach_pool_listeners(engine: AsyncEngine, label: str) -> None:
    """Register pool event listeners for structured logging."""

    # SQLAlchemy pool events fire on the *sync* underlying pool.
    sync_pool = engine.sync_engine.pool

    @event.listens_for(sync_pool, "checkout")
    def on_checkout(dbapi_connection: Any, connection_record: Any, connection_proxy: Any) -> None:
        log.debug("db.pool.checkout", engine=label, checked_out=sync_pool.checkedout())

    @event.listens_for(sync_pool, "checkin")
    def on_checkin(dbapi_connection: Any, connection_record: Any) -> None:
        log.debug("db.pool.checkin", engine=label, checked_out=sync_pool.checkedout())

    @event.listens_for(sync_pool, "connect")
    def on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        log.info("db.pool.new_connection", engine=label)


def is_sqlite_url(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN on SQLite so SAVEPOINT works.

    The sqlite3 driver otherwise starts transactions implicitly and breaks
    session.begin_nested(), which the audit sink relies on.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def create_engine_with_pool(
    url: str,
    *,
    echo: bool = False,
    label: str = "control_plane",
    pool_size: int = POOL_SIZE,
    max_overflow: int = POOL_MAX_OVERFLOW,
    pool_timeout: int = POOL_TIMEOUT,
    pool_recycle: int = POOL_RECYCLE,
) -> AsyncEngine:
    """Create an AsyncEngine with pool configuration suited to the backend.

    Args:
        url:          Async SQLAlchemy URL.
        echo:         Log SQL statements.
        label:        Name used in pool log events (e.g. a tenant db name).
        pool_size:    Number of permanent connections in the pool.
        max_overflow: Extra connections allowed beyond pool_size.
        pool_timeout: Seconds to wait for a free connection.
        pool_recycle: Seconds after which a connection is recycled.
    """
    if is_sqlite_url(url):
        engine = create_async_engine(url, echo=echo)
        enable_sqlite_savepoints(engine)
        log.info("db.engine.created", engine=label, mode="sqlite")
        return engine

    engine = create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
    )
    _attach_pool_listeners(engine, label)

    log.info(
        "db.engine.created",
        engine=label,
        mode="pooled",
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=pool_recycle,
    )
    return engine
