"""Permission resolver - effective applet permissions per platform role.

Resolution order for (applet, role):
  1. administrator override (PermissionOverride row), if any
  2. the applet manifest's default set for the role
  3. empty list

Overrides are read through PermissionOverrideCache. The cache is built once
in the app lifespan, lives on app.state and is handed to request handlers
through get_permission_resolver(). It loads an applet's overrides on first
use and is refreshed by the writer after every override change; there is
no TTL. The writer's refresh sees its own uncommitted rows, so the entry is
dropped again when that transaction commits or rolls back and the next
reader reloads the stored state.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from typing import Any

import structlog
from fastapi import Depends, Request
from sqlalchemy import delete, event, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from identity_core.auth.dependencies import AuthenticatedUser, get_current_user
from identity_core.core.applets import AppletRegistry
from identity_core.core.errors import PermissionDeniedError, ValidationError
from identity_core.core.policy import ROLE_PRIORITY, is_valid_role
from identity_core.database import get_db_session
from identity_core.models.permission_override import PermissionOverride

log = structlog.get_logger(__name__)


class PermissionOverrideCache:
    """In-process cache of overrides: applet_id -> {role: [keys]}."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, list[str]]] = {}
        self._lock = asyncio.Lock()

    def is_loaded(self, applet_id: str) -> bool:
        return applet_id in self._entries

    async def get(self, db: AsyncSession, applet_id: str) -> dict[str, list[str]]:
        if applet_id not in self._entries:
            await self.refresh(db, applet_id)
        return self._entries.get(applet_id, {})

    async def refresh(self, db: AsyncSession, applet_id: str) -> None:
        async with self._lock:
            result = await db.execute(
                select(PermissionOverride).where(PermissionOverride.applet_id == applet_id)
            )
            self._entries[applet_id] = {
                row.role: list(row.permissions or []) for row in result.scalars().all()
            }
        log.debug("permissions.cache_refreshed", applet_id=applet_id, overrides=len(self._entries[applet_id]))

    def invalidate(self, applet_id: str | None = None) -> None:
        if applet_id is None:
            self._entries.clear()
        else:
            self._entries.pop(applet_id, None)


class PermissionResolver:
    def __init__(self, registry: AppletRegistry, cache: PermissionOverrideCache) -> None:
        self.registry = registry
        self.cache = cache

    async def resolve(self, db: AsyncSession, applet_id: str, role: str) -> list[str]:
        manifest = self.registry.get(applet_id)
        overrides = await self.cache.get(db, applet_id)
        if role in overrides:
            return list(overrides[role])
        return manifest.defaults_for(role)

    async def role_mappings(self, db: AsyncSession, applet_id: str) -> dict[str, dict[str, Any]]:
        """Effective set for every platform role, tagged with where it came from."""
        manifest = self.registry.get(applet_id)
        overrides = await self.cache.get(db, applet_id)
        mappings: dict[str, dict[str, Any]] = {}
        for role in ROLE_PRIORITY:
            if role.value in overrides:
                mappings[role.value] = {"permissions": list(overrides[role.value]), "source": "override"}
            else:
                mappings[role.value] = {"permissions": manifest.defaults_for(role.value), "source": "default"}
        return mappings

    def _forget_when_transaction_ends(self, db: AsyncSession, applet_id: str) -> None:
        """Drop the applet's cached overrides once the writer's transaction ends.

        The refresh in set_override/delete_override reads the writer's own
        uncommitted rows. Whether the outer transaction commits or rolls back,
        the next reader reloads what was actually stored.
        """
        cache = self.cache
        pending = True

        def _on_end(session: Session, transaction: SessionTransaction) -> None:
            nonlocal pending
            if pending and transaction.parent is None:
                pending = False
                cache.invalidate(applet_id)

        event.listen(db.sync_session, "after_transaction_end", _on_end)

    async def set_override(
        self,
        db: AsyncSession,
        applet_id: str,
        role: str,
        permissions: list[str],
        *,
        updated_by: uuid.UUID | None = None,
    ) -> list[str]:
        """Replace the role's set for this applet and refresh the cache.

        Raises ValidationError listing any keys the manifest does not declare.
        """
        manifest = self.registry.get(applet_id)
        if not is_valid_role(role):
            raise ValidationError(f"Unknown role: {role}", details={"role": role})
        invalid = manifest.unknown_keys(permissions)
        if invalid:
            raise ValidationError(
                f"Invalid permissions: {', '.join(invalid)}",
                details={"invalid": invalid},
            )
        keys = list(dict.fromkeys(permissions))

        result = await db.execute(
            select(PermissionOverride).where(
                PermissionOverride.applet_id == applet_id,
                PermissionOverride.role == role,
            )
        )
        override = result.scalar_one_or_none()
        if override is None:
            override = PermissionOverride(applet_id=applet_id, role=role)
            db.add(override)
        override.permissions = keys
        override.updated_by = updated_by
        await db.flush()

        await self.cache.refresh(db, applet_id)
        self._forget_when_transaction_ends(db, applet_id)
        log.info("permissions.override_set", applet_id=applet_id, role=role, count=len(keys))
        return keys

    async def delete_override(self, db: AsyncSession, applet_id: str, role: str) -> bool:
        self.registry.get(applet_id)
        result = await db.execute(
            delete(PermissionOverride).where(
                PermissionOverride.applet_id == applet_id,
                PermissionOverride.role == role,
            )
        )
        await self.cache.refresh(db, applet_id)
        self._forget_when_transaction_ends(db, applet_id)
        removed = bool(result.rowcount)
        log.info("permissions.override_deleted", applet_id=applet_id, role=role, removed=removed)
        return removed


# ------------------------------------------------------------------ #
# Dependencies
# ------------------------------------------------------------------ #


def get_permission_resolver(request: Request) -> PermissionResolver:
    return PermissionResolver(request.app.state.applet_registry, request.app.state.permission_cache)


def require_permission(applet_id: str, *required: str) -> Callable:
    """Dependency factory that asserts the caller's role grants every key.

    Usage:
        @router.post("/seo/analyze")
        async def analyze(
            current_user: AuthenticatedUser = Depends(
                require_permission("seo-optimizer", "seo:analysis:run")
            ),
        ):
            ...
    """

    async def _check_permission(
        current_user: AuthenticatedUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
        resolver: PermissionResolver = Depends(get_permission_resolver),
    ) -> AuthenticatedUser:
        effective = set(await resolver.resolve(db, applet_id, str(current_user.role)))
        missing = [key for key in required if key not in effective]
        if missing:
            log.info(
                "permissions.denied",
                applet_id=applet_id,
                role=str(current_user.role),
                missing=missing,
            )
            raise PermissionDeniedError(
                "Permission denied",
                details={"missing": missing, "role": str(current_user.role)},
            )
        return current_user

    return _check_permission
