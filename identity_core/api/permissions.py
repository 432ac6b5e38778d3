"""Applet permission API.

Routes:
    GET    /api/v1/permissions/{applet_id}                  - Manifest + effective role mappings (admin)
    GET    /api/v1/permissions/{applet_id}/me               - Caller's effective permissions
    PUT    /api/v1/permissions/{applet_id}/override         - Replace a role's set (platform_admin)
    DELETE /api/v1/permissions/{applet_id}/override/{role}  - Restore defaults (platform_admin)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.api.schemas import ApiModel
from identity_core.auth.dependencies import (
    AuthenticatedUser,
    get_current_user,
    require_admin,
    require_platform_admin,
)
from identity_core.core.audit import AuditSink, performer_from_user
from identity_core.database import get_db_session
from identity_core.models.audit import AuditCategory
from identity_core.services.permissions import PermissionResolver, get_permission_resolver

router = APIRouter(prefix="/permissions", tags=["permissions"])


class OverrideRequest(ApiModel):
    role: str
    permissions: list[str]


@router.get("/{applet_id}")
async def applet_permissions(
    applet_id: str,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> dict:
    manifest = resolver.registry.get(applet_id)
    return {
        "applet": manifest.to_dict(),
        "permissions": manifest.to_dict()["permissions"],
        "role_mappings": await resolver.role_mappings(db, applet_id),
    }


@router.get("/{applet_id}/me")
async def my_permissions(
    applet_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> dict:
    role = str(current_user.role)
    return {
        "applet_id": applet_id,
        "role": role,
        "permissions": await resolver.resolve(db, applet_id, role),
    }


@router.put("/{applet_id}/override")
async def set_override(
    applet_id: str,
    body: OverrideRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> dict:
    keys = await resolver.set_override(
        db, applet_id, body.role, body.permissions, updated_by=current_user.id
    )
    await AuditSink(db).record(
        action="permissions.override_set",
        category=AuditCategory.SYSTEM,
        performed_by=performer_from_user(current_user.user),
        target={"type": "applet", "id": applet_id, "label": body.role},
        details={"role": body.role, "permissions": keys},
        request=request,
    )
    return {"applet_id": applet_id, "role": body.role, "permissions": keys, "source": "override"}


@router.delete("/{applet_id}/override/{role}")
async def delete_override(
    applet_id: str,
    role: str,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> dict:
    removed = await resolver.delete_override(db, applet_id, role)
    if removed:
        await AuditSink(db).record(
            action="permissions.override_deleted",
            category=AuditCategory.SYSTEM,
            performed_by=performer_from_user(current_user.user),
            target={"type": "applet", "id": applet_id, "label": role},
            details={"role": role},
            request=request,
        )
    return {
        "applet_id": applet_id,
        "role": role,
        "permissions": await resolver.resolve(db, applet_id, role),
        "source": "default",
        "removed": removed,
    }
