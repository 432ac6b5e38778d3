"""SsoConfig model - one row per federation provider.

The client secret is write-only from the API's point of view: every read
path renders it as MASKED_SECRET.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from identity_core.database import Base

MASKED_SECRET = "••••••••"
DEFAULT_SCOPES = ["openid", "profile", "email"]


class SsoConfig(Base):
    __tablename__ = "sso_configs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, default="entra_id")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Directory (Entra) tenant, not a platform tenant
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    client_secret: Mapped[str] = mapped_column(Text, nullable=False)
    redirect_uri: Mapped[str] = mapped_column(String(1024), nullable=False)
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=lambda: list(DEFAULT_SCOPES))
    group_role_map: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    auto_provision: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    default_role: Mapped[str] = mapped_column(String(32), nullable=False, default="user")

    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

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

    def to_safe_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "enabled": self.enabled,
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "client_secret": MASKED_SECRET,
            "redirect_uri": self.redirect_uri,
            "scopes": list(self.scopes or []),
            "group_role_map": dict(self.group_role_map or {}),
            "auto_provision": self.auto_provision,
            "default_role": self.default_role,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
        }

    def __repr__(self) -> str:
        return f"<SsoConfig provider={self.provider!r} enabled={self.enabled}>"
