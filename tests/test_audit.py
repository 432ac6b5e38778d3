"""Tests for the audit sink.

Covers:
- Entries are recorded with actor, target and request metadata
- Detail values are truncated at 500 chars
- A failed write is swallowed and never breaks the caller
- Listing is newest-first and filterable by category
- Retention: expired entries are hidden from listings and pruned on an interval
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from identity_core.core.audit import (
    AuditRetentionTask,
    AuditSink,
    _truncate,
    list_entries,
    performer_from_user,
    prune_expired,
)
from identity_core.database import Base
from identity_core.db.pool import enable_sqlite_savepoints
from identity_core.models.audit import AuditCategory, AuditLogEntry


@pytest.fixture
async def audit_file_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed database so the retention task and the test use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/audit.db")
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


class TestAuditTruncation:
    """Verify detail truncation behavior."""

    def test_truncate_short_string_unchanged(self) -> None:
        assert _truncate("Short message") == "Short message"

    def test_truncate_long_string(self) -> None:
        """Strings over 500 chars are truncated with ellipsis."""
        result = _truncate("x" * 600)
        assert len(result) == 503
        assert result.endswith("...")

    def test_truncate_exactly_500(self) -> None:
        assert _truncate("y" * 500) == "y" * 500

    def test_truncate_none_returns_none(self) -> None:
        assert _truncate(None) is None


class TestAuditSinkWrite:
    """AuditSink writes entries inside the caller's transaction."""

    @pytest.mark.asyncio
    async def test_entry_is_written(self, db_session: AsyncSession, make_user) -> None:
        actor = await make_user("actor@example.com")
        entry = await AuditSink(db_session).record(
            action="user.created",
            category=AuditCategory.USER,
            performed_by=performer_from_user(actor),
            target={"type": "user", "id": "u-1", "label": "new@example.com"},
            details={"note": "z" * 800, "count": 3},
        )
        await db_session.commit()

        assert entry is not None
        stored = (await db_session.execute(select(AuditLogEntry))).scalar_one()
        assert stored.action == "user.created"
        assert stored.category == AuditCategory.USER
        assert stored.performed_by["email"] == "actor@example.com"
        assert stored.target["label"] == "new@example.com"
        assert stored.details["note"].endswith("...")
        assert stored.details["count"] == 3

    @pytest.mark.asyncio
    async def test_missing_actor_is_system(self, db_session: AsyncSession) -> None:
        entry = await AuditSink(db_session).record(action="system.initialized", category=AuditCategory.SYSTEM)
        assert entry is not None
        assert entry.performed_by["user_id"] == "system"

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self) -> None:
        db = MagicMock()
        db.begin_nested.side_effect = SQLAlchemyError("connection reset")

        result = await AuditSink(db).record(action="auth.login", category=AuditCategory.AUTH)
        assert result is None


class TestAuditQueries:
    @pytest.mark.asyncio
    async def test_list_newest_first_with_category(self, db_session: AsyncSession) -> None:
        sink = AuditSink(db_session)
        await sink.record(action="auth.login", category=AuditCategory.AUTH)
        await sink.record(action="tenant.created", category=AuditCategory.TENANT)
        await sink.record(action="auth.logout", category=AuditCategory.AUTH)
        await db_session.commit()

        rows, total = await list_entries(db_session)
        assert total == 3
        assert [r.action for r in rows] == ["auth.logout", "tenant.created", "auth.login"]

        auth_rows, auth_total = await list_entries(db_session, category="auth", page_size=1)
        assert auth_total == 2
        assert [r.action for r in auth_rows] == ["auth.logout"]

        _, everything = await list_entries(db_session, category="all")
        assert everything == 3

    @pytest.mark.asyncio
    async def test_prune_expired(self, db_session: AsyncSession) -> None:
        old = await AuditSink(db_session).record(action="auth.login", category=AuditCategory.AUTH)
        await AuditSink(db_session).record(action="auth.logout", category=AuditCategory.AUTH)
        old.created_at = datetime.now(UTC) - timedelta(days=400)
        await db_session.commit()

        removed = await prune_expired(db_session, retention_days=365)
        await db_session.commit()

        assert removed == 1
        remaining = (await db_session.execute(select(AuditLogEntry.action))).scalars().all()
        assert remaining == ["auth.logout"]


class TestAuditRetention:
    """Entries past the retention window are hidden and deleted while the app runs."""

    async def _aged(self, db: AsyncSession, action: str, days: int) -> AuditLogEntry:
        entry = await AuditSink(db).record(action=action, category=AuditCategory.AUTH)
        entry.created_at = datetime.now(UTC) - timedelta(days=days)
        return entry

    @pytest.mark.asyncio
    async def test_expired_entries_are_not_listed(self, db_session: AsyncSession) -> None:
        await self._aged(db_session, "auth.login", days=400)
        await AuditSink(db_session).record(action="auth.logout", category=AuditCategory.AUTH)
        await db_session.commit()

        rows, total = await list_entries(db_session, retention_days=365)
        assert total == 1
        assert [r.action for r in rows] == ["auth.logout"]

    @pytest.mark.asyncio
    async def test_audit_endpoint_hides_expired_entries(
        self, admin_client: AsyncClient, db_session: AsyncSession, test_settings
    ) -> None:
        await self._aged(db_session, "auth.login", days=test_settings.audit_retention_days + 1)
        await db_session.commit()

        body = (await admin_client.get("/api/v1/users/audit/logs")).json()
        assert body["total"] == 0
        assert body["data"] == []

    @pytest.mark.asyncio
    async def test_task_prunes_on_start_and_on_interval(self, audit_file_engine: AsyncEngine) -> None:
        factory = async_sessionmaker(audit_file_engine, class_=AsyncSession, expire_on_commit=False)

        async def remaining() -> list[str]:
            async with factory() as db:
                return list((await db.execute(select(AuditLogEntry.action))).scalars().all())

        async with factory() as db:
            await self._aged(db, "auth.login", days=400)
            await AuditSink(db).record(action="auth.logout", category=AuditCategory.AUTH)
            await db.commit()

        task = AuditRetentionTask(factory, retention_days=365, interval_seconds=0.01)
        await task.start()
        try:
            assert await remaining() == ["auth.logout"]

            async with factory() as db:
                await self._aged(db, "auth.sso_login", days=500)
                await db.commit()

            for _ in range(200):
                await asyncio.sleep(0.01)
                if await remaining() == ["auth.logout"]:
                    break
            assert await remaining() == ["auth.logout"]
        finally:
            await task.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_without_start(self, engine) -> None:
        task = AuditRetentionTask(async_sessionmaker(engine), retention_days=30, interval_seconds=60)
        await task.shutdown()
