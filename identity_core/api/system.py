"""Public system status for the login screen and first-run wizard."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.config import Settings, get_settings
from identity_core.database import get_db_session
from identity_core.models.tenant import Tenant, TenantStatus
from identity_core.models.user import User
from identity_core.services.organization import get_organization
from identity_core.services.sso_config import get_sso_config, sso_status

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/status")
async def system_status(
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user_count = (await db.execute(select(func.count()).select_from(User))).scalar_one()
    tenant_count = (
        await db.execute(
            select(func.count())
            .select_from(Tenant)
            .where(Tenant.status != TenantStatus.DECOMMISSIONED)
        )
    ).scalar_one()
    sso = sso_status(await get_sso_config(db, settings))
    org = await get_organization(db)

    return {
        "initialized": user_count > 0,
        "name": settings.app_name,
        "version": settings.app_version,
        "sso_enabled": sso["enabled"],
        "sso_provider": sso["provider"],
        "organization": (
            {"name": org.name, "slug": org.slug, "domain": org.domain} if org is not None else None
        ),
        "tenant_count": int(tenant_count),
    }
