"""Organization settings API (admin only).

Routes:
    GET /api/v1/organization   - Current organization, or {"configured": false}
    PUT /api/v1/organization   - Create or update the organization
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.api.schemas import ApiModel
from identity_core.auth.dependencies import AuthenticatedUser, require_admin
from identity_core.core.audit import AuditSink, performer_from_user
from identity_core.database import get_db_session
from identity_core.models.audit import AuditCategory
from identity_core.services.organization import (
    get_organization,
    organization_to_dict,
    upsert_organization,
)

router = APIRouter(prefix="/organization", tags=["organization"])


class OrganizationRequest(ApiModel):
    name: str = Field(..., min_length=1, max_length=255)
    domain: str | None = None
    logo_url: str | None = None
    primary_color: str | None = Field(None, max_length=16)
    timezone: str | None = None
    locale: str | None = None
    contact: dict[str, Any] | None = None
    features: dict[str, bool] | None = None
    subscription: dict[str, Any] | None = None


@router.get("")
async def read_organization(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    org = await get_organization(db)
    if org is None:
        return {"configured": False}
    return {"configured": True, "data": organization_to_dict(org)}


@router.put("")
async def save_organization(
    body: OrganizationRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    org, created = await upsert_organization(
        db, created_by=current_user.id, **body.model_dump(exclude_unset=True)
    )
    await AuditSink(db).record(
        action="organization.updated",
        category=AuditCategory.ORGANIZATION,
        performed_by=performer_from_user(current_user.user),
        target={"type": "organization", "id": str(org.id), "label": org.name},
        details={"created": created, "fields": sorted(body.model_fields_set)},
        request=request,
    )
    return {"configured": True, "data": organization_to_dict(org)}
