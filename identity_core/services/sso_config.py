"""SSO provider configuration.

The stored row wins; when there is none and ENTRA_ENABLED is set, a
transient (unsaved) SsoConfig is built from the environment so that a
deployment can enable federation without touching the admin UI.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.config import Settings
from identity_core.core.errors import ValidationError
from identity_core.core.policy import DEFAULT_ROLE, is_valid_role
from identity_core.models.sso_config import DEFAULT_SCOPES, MASKED_SECRET, SsoConfig

log = structlog.get_logger(__name__)

PROVIDER = "entra_id"
PROVIDER_LABEL = "Microsoft Entra ID"


async def get_stored_config(db: AsyncSession) -> SsoConfig | None:
    result = await db.execute(select(SsoConfig).where(SsoConfig.provider == PROVIDER))
    return result.scalar_one_or_none()


async def get_sso_config(db: AsyncSession, settings: Settings) -> SsoConfig | None:
    stored = await get_stored_config(db)
    if stored is not None:
        return stored

    if settings.entra_enabled:
        return SsoConfig(
            provider=PROVIDER,
            enabled=True,
            tenant_id=settings.entra_tenant_id,
            client_id=settings.entra_client_id,
            client_secret=settings.entra_client_secret.get_secret_value(),
            redirect_uri=settings.entra_redirect_uri,
            scopes=list(settings.entra_scopes),
            group_role_map={},
            auto_provision=True,
            default_role=str(DEFAULT_ROLE),
        )
    return None


async def upsert_sso_config(
    db: AsyncSession,
    *,
    tenant_id: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    enabled: bool | None = None,
    scopes: list[str] | None = None,
    group_role_map: dict[str, str] | None = None,
    auto_provision: bool | None = None,
    default_role: str | None = None,
) -> SsoConfig:
    """Create or replace the provider row.

    Sending the masked placeholder as the secret keeps the stored secret,
    so a form that round-trips the GET response does not wipe it.
    """
    if not (tenant_id and client_id and client_secret and redirect_uri):
        raise ValidationError("tenantId, clientId, clientSecret, and redirectUri are required")

    mapping = dict(group_role_map or {})
    bad_roles = sorted({r for r in mapping.values() if not is_valid_role(r)})
    role = default_role or str(DEFAULT_ROLE)
    if not is_valid_role(role):
        bad_roles.append(role)
    if bad_roles:
        raise ValidationError("Unknown roles in SSO configuration", details={"roles": bad_roles})

    config = await get_stored_config(db)
    if config is None:
        if client_secret == MASKED_SECRET:
            raise ValidationError("clientSecret is required")
        config = SsoConfig(provider=PROVIDER)
        db.add(config)

    config.enabled = bool(enabled) if enabled is not None else False
    config.tenant_id = tenant_id
    config.client_id = client_id
    if client_secret != MASKED_SECRET:
        config.client_secret = client_secret
    config.redirect_uri = redirect_uri
    config.scopes = list(scopes) if scopes else list(DEFAULT_SCOPES)
    config.group_role_map = mapping
    config.auto_provision = True if auto_provision is None else auto_provision
    config.default_role = role
    await db.flush()

    log.info("sso.config_saved", enabled=config.enabled, mapped_groups=len(mapping))
    return config


async def delete_sso_config(db: AsyncSession) -> bool:
    result = await db.execute(delete(SsoConfig).where(SsoConfig.provider == PROVIDER))
    removed = bool(result.rowcount)
    log.info("sso.config_deleted", removed=removed)
    return removed


def sso_status(config: SsoConfig | None) -> dict[str, Any]:
    enabled = bool(config and config.enabled)
    return {"enabled": enabled, "provider": PROVIDER_LABEL if enabled else None}
