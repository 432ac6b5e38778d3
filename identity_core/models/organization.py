"""Organization model - the single owner of all tenants.

Exactly one row is expected. It is created by the first PUT /organization
(or by /auth/setup when an organization name is supplied) and updated in
place afterwards. Subscription limits here bound tenant creation.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from identity_core.database import Base


class SubscriptionPlan(StrEnum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


def default_features() -> dict[str, bool]:
    return {
        "sso_enabled": False,
        "multi_tenancy": True,
        "audit_logging": True,
        "api_access": False,
        "local_login_disabled": False,
    }


def default_subscription() -> dict[str, Any]:
    return {
        "plan": SubscriptionPlan.PROFESSIONAL.value,
        "max_users": 50,
        "max_tenants": 10,
        "expires_at": None,
    }


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    primary_color: Mapped[str] = mapped_column(String(16), nullable=False, default="#2563eb")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/Chicago")
    locale: Mapped[str] = mapped_column(String(16), nullable=False, default="en-US")

    features: Mapped[dict[str, bool]] = mapped_column(JSON, nullable=False, default=default_features)
    contact: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    subscription: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=default_subscription
    )

    created_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    tenants: Mapped[list[Tenant]] = relationship(  # type: ignore[name-defined]
        "Tenant", back_populates="organization", lazy="raise"
    )

    @property
    def max_tenants(self) -> int:
        return int((self.subscription or {}).get("max_tenants", 10))

    @property
    def max_users(self) -> int:
        return int((self.subscription or {}).get("max_users", 50))

    def __repr__(self) -> str:
        return f"<Organization slug={self.slug!r}>"
