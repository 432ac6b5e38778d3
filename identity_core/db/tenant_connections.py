"""Tenant connection factory.

Each tenant owns an isolated database whose name is derived from its
tenant identifier. This module is the only place that knows how to turn that
name into a URL, how to create the database on the server, and how to hand
out a connection that is always released.

    factory = TenantConnectionFactory(settings)
    await factory.ensure_database("idc_tnt_ab12cd34")
    async with factory.connect("idc_tnt_ab12cd34") as conn:
        await conn.execute(...)

Engines are cached per database with a small pool each. The cache is bounded
(LRU); evicted engines are disposed.
"""

from __future__ import annotations

import asyncio
import re
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from identity_core.config import Settings
from identity_core.db.pool import create_engine_with_pool, is_sqlite_url

log = structlog.get_logger(__name__)

# Database names are interpolated into DDL, so only a conservative charset
# is accepted.
_DB_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,62}$")


def _check_db_name(db_name: str) -> str:
    if not _DB_NAME_RE.match(db_name):
        raise ValueError(f"Invalid tenant database name: {db_name!r}")
    return db_name


class TenantConnectionFactory:
    """Builds, caches and disposes engines for isolated tenant databases."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._engines: OrderedDict[str, AsyncEngine] = OrderedDict()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # URLs
    # ------------------------------------------------------------------ #

    def url_for(self, db_name: str, *, host: str | None = None, port: int | None = None) -> str:
        return self._settings.tenant_database_url_template.format(
            host=host or self._settings.tenant_db_host,
            port=port or self._settings.tenant_db_port,
            db_name=_check_db_name(db_name),
        )

    @property
    def is_sqlite(self) -> bool:
        return is_sqlite_url(self.url_for("default"))

    # ------------------------------------------------------------------ #
    # Database creation
    # ------------------------------------------------------------------ #

    async def database_exists(
        self, db_name: str, *, host: str | None = None, port: int | None = None
    ) -> bool:
        url = self.url_for(db_name, host=host, port=port)
        if self.is_sqlite:
            database = make_url(url).database
            return bool(database) and Path(database).exists()

        admin_engine = self._admin_engine(url)
        try:
            async with admin_engine.connect() as conn:
                result = await conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"),
                    {"name": db_name},
                )
                return result.scalar() is not None
        finally:
            await admin_engine.dispose()

    async def ensure_database(
        self, db_name: str, *, host: str | None = None, port: int | None = None
    ) -> bool:
        """Create the tenant database if it does not exist.

        Returns True when the database was created by this call, False when
        it was already there. Safe to call repeatedly.
        """
        url = self.url_for(db_name, host=host, port=port)

        if self.is_sqlite:
            database = make_url(url).database
            if not database:
                raise ValueError("SQLite tenant URL template must include a file path")
            path = Path(database)
            existed = path.exists()
            path.parent.mkdir(parents=True, exist_ok=True)
            # The file itself is created by the first connection.
            return not existed

        if await self.database_exists(db_name, host=host, port=port):
            return False

        admin_engine = self._admin_engine(url)
        try:
            async with admin_engine.connect() as conn:
                await conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        finally:
            await admin_engine.dispose()
        log.info("tenant_db.created", db_name=db_name)
        return True

    def _admin_engine(self, url: str) -> AsyncEngine:
        # CREATE DATABASE cannot run inside a transaction block.
        admin_url = make_url(url).set(database="postgres")
        return create_async_engine(admin_url, isolation_level="AUTOCOMMIT")

    # ------------------------------------------------------------------ #
    # Scoped connections
    # ------------------------------------------------------------------ #

    async def _engine_for(self, db_name: str, host: str | None, port: int | None) -> AsyncEngine:
        async with self._lock:
            engine = self._engines.get(db_name)
            if engine is not None:
                self._engines.move_to_end(db_name)
                return engine

            engine = create_engine_with_pool(
                self.url_for(db_name, host=host, port=port),
                label=db_name,
                pool_size=self._settings.tenant_pool_size,
                max_overflow=0,
            )
            self._engines[db_name] = engine

            while len(self._engines) > self._settings.tenant_engine_cache_size:
                evicted_name, evicted = self._engines.popitem(last=False)
                await evicted.dispose()
                log.debug("tenant_db.engine_evicted", db_name=evicted_name)
            return engine

    @asynccontextmanager
    async def connect(
        self, db_name: str, *, host: str | None = None, port: int | None = None
    ) -> AsyncIterator[AsyncConnection]:
        """Yield a transactional connection to a tenant database.

        The transaction commits when the block exits cleanly and rolls back
        otherwise; the connection is returned to the pool on every path.
        """
        engine = await self._engine_for(db_name, host, port)
        log.debug("tenant_db.connection_acquired", db_name=db_name)
        try:
            async with engine.begin() as conn:
                yield conn
        finally:
            log.debug("tenant_db.connection_released", db_name=db_name)

    async def dispose_all(self) -> None:
        async with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            await engine.dispose()
        log.info("tenant_db.engines_disposed", count=len(engines))

    @property
    def open_engine_count(self) -> int:
        return len(self._engines)
