"""Singleton organization settings."""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.core.errors import ValidationError
from identity_core.models.organization import (
    Organization,
    SubscriptionPlan,
    default_features,
    default_subscription,
)
from identity_core.services.tenants import slugify

log = structlog.get_logger(__name__)

_OPTIONAL_FIELDS = ("domain", "logo_url", "primary_color", "timezone", "locale", "contact")


async def get_organization(db: AsyncSession) -> Organization | None:
    result = await db.execute(select(Organization).order_by(Organization.created_at).limit(1))
    return result.scalar_one_or_none()


def _checked_subscription(current: dict[str, Any] | None, update: dict[str, Any]) -> dict[str, Any]:
    merged = {**default_subscription(), **(current or {}), **update}
    if merged.get("plan") not in SubscriptionPlan._value2member_map_:
        raise ValidationError(f"Unknown subscription plan: {merged.get('plan')}")
    for key in ("max_users", "max_tenants"):
        value = merged.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValidationError(f"subscription.{key} must be a non-negative integer")
    return merged


async def upsert_organization(
    db: AsyncSession,
    *,
    name: str,
    created_by: uuid.UUID | None = None,
    features: dict[str, bool] | None = None,
    subscription: dict[str, Any] | None = None,
    **fields: Any,
) -> tuple[Organization, bool]:
    """Create or update the organization; returns (org, created).

    The slug always follows the name. created_by is only set on insert.
    """
    if not (name or "").strip():
        raise ValidationError("Organization name is required")

    org = await get_organization(db)
    created = org is None
    if org is None:
        org = Organization(
            features=default_features(),
            subscription=default_subscription(),
            contact={},
            created_by=created_by,
        )
        db.add(org)

    org.name = name.strip()
    org.slug = slugify(name)
    for key in _OPTIONAL_FIELDS:
        if fields.get(key) is not None:
            setattr(org, key, fields[key])
    if features is not None:
        org.features = {**(org.features or default_features()), **features}
    if subscription is not None:
        org.subscription = _checked_subscription(org.subscription, subscription)

    await db.flush()
    log.info("organization.saved", slug=org.slug, created=created)
    return org, created


def organization_to_dict(org: Organization) -> dict[str, Any]:
    return {
        "id": str(org.id),
        "name": org.name,
        "slug": org.slug,
        "domain": org.domain,
        "logo_url": org.logo_url,
        "primary_color": org.primary_color,
        "timezone": org.timezone,
        "locale": org.locale,
        "features": dict(org.features or {}),
        "contact": dict(org.contact or {}),
        "subscription": dict(org.subscription or {}),
        "created_by": str(org.created_by) if org.created_by else None,
        "created_at": org.created_at.isoformat() if org.created_at else None,
        "updated_at": org.updated_at.isoformat() if org.updated_at else None,
    }
