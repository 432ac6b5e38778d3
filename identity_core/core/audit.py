"""Audit sink.

Provides a non-blocking interface for recording security-relevant actions
(logins, user changes, tenant lifecycle, SSO configuration, syncs).

Design:
- Each write runs inside a SAVEPOINT (session.begin_nested) so that a failed
  audit insert rolls back only itself, never the business operation that
  triggered it. Failures are logged as audit.write_failed and swallowed.
- The sink does not commit - the calling code owns the transaction boundary.
- Details are truncated per value to keep rows small.
- Retention: entries past the configured window are never listed, and
  AuditRetentionTask deletes them at startup and then every
  audit_prune_interval_seconds for as long as the app runs.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from fastapi import Request
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from identity_core.models.audit import AuditCategory, AuditLogEntry
from identity_core.models.user import User

log = structlog.get_logger(__name__)

_DETAIL_MAX_CHARS = 500
_SYSTEM_ACTOR = {"user_id": "system", "email": "system", "display_name": "System"}


def _truncate(text: str | None, max_chars: int = _DETAIL_MAX_CHARS) -> str | None:
    """Truncate text to max_chars, appending '...' if truncated."""
    if text is None:
        return None
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def _clip_details(details: dict[str, Any] | None) -> dict[str, Any]:
    clipped: dict[str, Any] = {}
    for key, value in (details or {}).items():
        clipped[key] = _truncate(value) if isinstance(value, str) else value
    return clipped


def performer_from_user(user: User | None) -> dict[str, Any]:
    """Snapshot of the acting user for the performed_by column."""
    if user is None:
        return dict(_SYSTEM_ACTOR)
    return {
        "user_id": str(user.id),
        "email": user.email,
        "display_name": user.display_name,
    }


def client_ip(request: Request | None) -> str | None:
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class AuditSink:
    """Write-only audit recorder.

    Usage:
        audit = AuditSink(db)
        await audit.record(
            action="tenant.created",
            category=AuditCategory.TENANT,
            performed_by=performer_from_user(current_user.user),
            target={"type": "tenant", "id": tenant.tenant_id, "label": tenant.name},
            request=request,
        )
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def record(
        self,
        *,
        action: str,
        category: AuditCategory,
        performed_by: dict[str, Any] | None = None,
        target: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
        request: Request | None = None,
    ) -> AuditLogEntry | None:
        """Record an entry; returns None when the write failed."""
        entry = AuditLogEntry(
            action=action,
            category=category,
            performed_by=performed_by or dict(_SYSTEM_ACTOR),
            target=target,
            details=_clip_details(details),
            ip_address=client_ip(request),
            user_agent=_truncate(request.headers.get("user-agent"), 512) if request else None,
            created_at=datetime.now(UTC),
        )
        try:
            async with self._db.begin_nested():
                self._db.add(entry)
        except Exception as exc:
            log.error("audit.write_failed", error=str(exc), action=action)
            return None
        return entry


def retention_cutoff(retention_days: int) -> datetime:
    return datetime.now(UTC) - timedelta(days=retention_days)


async def list_entries(
    db: AsyncSession,
    *,
    page: int = 1,
    page_size: int = 50,
    category: str | None = None,
    retention_days: int | None = None,
) -> tuple[list[AuditLogEntry], int]:
    """Newest-first page of audit entries plus the total count.

    With retention_days, entries past the window are excluded even if the
    pruning task has not removed them yet.
    """
    stmt = select(AuditLogEntry)
    count_stmt = select(func.count()).select_from(AuditLogEntry)
    if category and category != "all":
        stmt = stmt.where(AuditLogEntry.category == category)
        count_stmt = count_stmt.where(AuditLogEntry.category == category)
    if retention_days is not None:
        cutoff = retention_cutoff(retention_days)
        stmt = stmt.where(AuditLogEntry.created_at >= cutoff)
        count_stmt = count_stmt.where(AuditLogEntry.created_at >= cutoff)

    stmt = stmt.order_by(AuditLogEntry.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    rows = (await db.execute(stmt)).scalars().all()
    total = (await db.execute(count_stmt)).scalar_one()
    return list(rows), int(total)


async def prune_expired(db: AsyncSession, retention_days: int) -> int:
    """Delete entries older than retention_days. Returns the number removed."""
    result = await db.execute(
        delete(AuditLogEntry).where(AuditLogEntry.created_at < retention_cutoff(retention_days))
    )
    removed = result.rowcount or 0
    if removed:
        log.info("audit.pruned", removed=removed, retention_days=retention_days)
    return removed


class AuditRetentionTask:
    """Deletes expired entries at startup and then on a fixed interval."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention_days: int,
        interval_seconds: float,
    ) -> None:
        self._session_factory = session_factory
        self._retention_days = retention_days
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def prune_once(self) -> int:
        async with self._session_factory() as db:
            removed = await prune_expired(db, self._retention_days)
            await db.commit()
        return removed

    async def start(self) -> None:
        await self.prune_once()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._periodic_prune())

    async def _periodic_prune(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval_seconds)
                await self.prune_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("audit.prune_failed", error=str(exc), exc_info=True)

    async def shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
