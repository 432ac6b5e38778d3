"""AuditLogEntry model - append-only record of security-relevant actions.

Design principles:
- Append-only: rows are never updated
- Rows older than the retention window (settings.audit_retention_days) are
  hidden from listings and deleted by core.audit.AuditRetentionTask, which
  runs at startup and every audit_prune_interval_seconds
- Actor and target are denormalized JSON snapshots so entries stay readable
  after the referenced user or tenant changes
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from identity_core.database import Base


class AuditCategory(StrEnum):
    USER = "user"
    AUTH = "auth"
    ORGANIZATION = "organization"
    TENANT = "tenant"
    SSO = "sso"
    SYSTEM = "system"


class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # Action identifier, e.g. "user.invited", "tenant.created", "auth.sso_login"
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    category: Mapped[AuditCategory] = mapped_column(String(32), nullable=False, index=True)

    # {"user_id": ..., "email": ..., "display_name": ...}
    performed_by: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # {"type": "tenant", "id": "tnt_...", "label": "Acme"}
    target: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("ix_audit_log_entries_created_at", "created_at"),
        Index("ix_audit_log_entries_category_created", "category", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "action": self.action,
            "category": self.category,
            "performed_by": self.performed_by,
            "target": self.target,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<AuditLogEntry id={self.id} action={self.action!r}>"
