"""Tenant management API (admin only).

Routes:
    GET    /api/v1/tenants                  - List tenants
    POST   /api/v1/tenants                  - Create and provision a tenant
    GET    /api/v1/tenants/{id}             - Get by tenant id (tnt_xxxxxxxx) or record id
    PATCH  /api/v1/tenants/{id}             - Update name, description, status, settings
    DELETE /api/v1/tenants/{id}             - Decommission (record is kept)
    POST   /api/v1/tenants/{id}/provision   - Retry database provisioning
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.api.deps import get_tenant_registry
from identity_core.api.schemas import ApiModel, paginated
from identity_core.auth.dependencies import AuthenticatedUser, require_admin
from identity_core.core.audit import AuditSink, performer_from_user
from identity_core.database import get_db_session
from identity_core.models.audit import AuditCategory
from identity_core.models.tenant import Tenant
from identity_core.services.tenants import TenantRegistry, tenant_to_dict

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])


class TenantSettingsBody(ApiModel):
    max_users: int | None = Field(None, ge=0)
    storage_quota_mb: int | None = Field(None, ge=0)
    features: list[str] | None = None
    custom_domain: str | None = None


class CreateTenantRequest(ApiModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    settings: TenantSettingsBody | None = None
    metadata: dict[str, Any] | None = None


class UpdateTenantRequest(ApiModel):
    name: str | None = Field(None, max_length=255)
    description: str | None = None
    status: str | None = None
    settings: TenantSettingsBody | None = None
    metadata: dict[str, Any] | None = None


def _tenant_target(tenant: Tenant) -> dict:
    return {"type": "tenant", "id": tenant.tenant_id, "label": tenant.name}


@router.get("")
async def list_tenants(
    tenant_status: str | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100, alias="pageSize"),
    current_user: AuthenticatedUser = Depends(require_admin),
    registry: TenantRegistry = Depends(get_tenant_registry),
) -> dict:
    rows, total = await registry.list_tenants(status=tenant_status, page=page, page_size=page_size)
    return paginated([tenant_to_dict(t) for t in rows], total, page, page_size)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tenant(
    body: CreateTenantRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    registry: TenantRegistry = Depends(get_tenant_registry),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    tenant, org = await registry.create_tenant(
        name=body.name,
        description=body.description,
        settings=body.settings.model_dump(exclude_none=True) if body.settings else None,
        metadata=body.metadata,
        created_by=current_user.id,
    )
    await AuditSink(db).record(
        action="tenant.created",
        category=AuditCategory.TENANT,
        performed_by=performer_from_user(current_user.user),
        target=_tenant_target(tenant),
        details={"slug": tenant.slug, "db_provisioned": tenant.db_provisioned},
        request=request,
    )
    return {"data": tenant_to_dict(tenant, org)}


@router.get("/{identifier}")
async def get_tenant(
    identifier: str,
    current_user: AuthenticatedUser = Depends(require_admin),
    registry: TenantRegistry = Depends(get_tenant_registry),
) -> dict:
    tenant = await registry.get_tenant(identifier)
    return {"data": tenant_to_dict(tenant, await registry.get_organization(tenant))}


@router.patch("/{identifier}")
async def update_tenant(
    identifier: str,
    body: UpdateTenantRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    registry: TenantRegistry = Depends(get_tenant_registry),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    tenant, changes = await registry.update_tenant(
        identifier,
        name=body.name,
        description=body.description,
        status=body.status,
        settings=body.settings.model_dump(exclude_none=True) if body.settings else None,
        metadata=body.metadata,
    )
    if changes:
        await AuditSink(db).record(
            action="tenant.updated",
            category=AuditCategory.TENANT,
            performed_by=performer_from_user(current_user.user),
            target=_tenant_target(tenant),
            details={"changes": changes},
            request=request,
        )
    return {"data": tenant_to_dict(tenant)}


@router.delete("/{identifier}")
async def decommission_tenant(
    identifier: str,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    registry: TenantRegistry = Depends(get_tenant_registry),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    tenant = await registry.decommission(identifier)
    await AuditSink(db).record(
        action="tenant.decommissioned",
        category=AuditCategory.TENANT,
        performed_by=performer_from_user(current_user.user),
        target=_tenant_target(tenant),
        request=request,
    )
    return {"message": "Tenant decommissioned", "data": tenant_to_dict(tenant)}


@router.post("/{identifier}/provision")
async def provision_tenant(
    identifier: str,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    registry: TenantRegistry = Depends(get_tenant_registry),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    tenant, report = await registry.retry_provisioning(identifier)
    await AuditSink(db).record(
        action="tenant.provisioned",
        category=AuditCategory.TENANT,
        performed_by=performer_from_user(current_user.user),
        target=_tenant_target(tenant),
        details={"db_name": report.db_name, "steps": report.steps},
        request=request,
    )
    return {
        "message": "Database provisioned",
        "data": tenant_to_dict(tenant),
        "steps": report.steps,
    }
