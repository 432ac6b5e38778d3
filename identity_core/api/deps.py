"""Request-scoped access to the resources built in the app lifespan."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.config import Settings, get_settings
from identity_core.database import get_db_session
from identity_core.db.tenant_connections import TenantConnectionFactory
from identity_core.services.directory_sync import SyncRunLock
from identity_core.services.tenants import TenantProvisioner, TenantRegistry


async def get_http_client(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Shared provider client; a short-lived one when the app has none."""
    shared = getattr(request.app.state, "http_client", None)
    if shared is not None:
        yield shared
        return
    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
        yield client


def get_tenant_connections(request: Request) -> TenantConnectionFactory:
    return request.app.state.tenant_connections  # type: ignore[no-any-return]


def get_sync_lock(request: Request) -> SyncRunLock:
    return request.app.state.sync_lock  # type: ignore[no-any-return]


def get_tenant_registry(
    db: AsyncSession = Depends(get_db_session),
    connections: TenantConnectionFactory = Depends(get_tenant_connections),
    settings: Settings = Depends(get_settings),
) -> TenantRegistry:
    return TenantRegistry(db, TenantProvisioner(connections), settings)
