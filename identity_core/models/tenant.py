"""Tenant model - the isolation unit.

Every tenant owns an isolated database whose name is derived from its
tenant_id. The database descriptor is stored flat on the row (db_name,
db_host, db_port, db_provisioned, db_provisioned_at).

Status lifecycle:
    provisioning -> active          (provisioning succeeded)
    provisioning -> provisioning    (failed, retry via /provision)
    active <-> suspended
    any non-terminal -> decommissioned   (soft; database is kept)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from identity_core.database import Base


class TenantStatus(StrEnum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DECOMMISSIONED = "decommissioned"


DEFAULT_TENANT_FEATURES = ["dashboards", "widgets", "reports"]


def default_tenant_settings() -> dict[str, Any]:
    return {
        "max_users": 25,
        "storage_quota_mb": 1024,
        "features": list(DEFAULT_TENANT_FEATURES),
        "custom_domain": None,
    }


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        unique=True,
        index=True,
        comment="Business identifier, e.g. 'tnt_k3x9a0qz'",
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        index=True,
        comment="URL-safe identifier, e.g. 'acme-corp'",
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    status: Mapped[TenantStatus] = mapped_column(
        String(32),
        nullable=False,
        default=TenantStatus.PROVISIONING,
        index=True,
    )

    # Isolated database descriptor
    db_name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    db_host: Mapped[str] = mapped_column(String(255), nullable=False)
    db_port: Mapped[int] = mapped_column(Integer, nullable=False)
    db_provisioned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    db_provisioned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    settings: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=default_tenant_settings
    )
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
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

    organization: Mapped[Organization] = relationship(  # type: ignore[name-defined]
        "Organization", back_populates="tenants", lazy="raise"
    )

    def __repr__(self) -> str:
        return f"<Tenant tenant_id={self.tenant_id!r} status={self.status}>"
