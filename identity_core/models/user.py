"""User model - platform identities, local or federated.

A local user is keyed by email and authenticates with a bcrypt hash. A
federated user is keyed by external_id (the directory object id) and never
holds a password. Users are never hard-deleted; deactivation is the terminal
state.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from identity_core.database import Base


class UserRole(StrEnum):
    PLATFORM_ADMIN = "platform_admin"
    ADMIN = "admin"
    IT_OPERATIONS = "it_operations"
    SECURITY_ANALYST = "security_analyst"
    EXECUTIVE_VIEWER = "executive_viewer"
    USER = "user"
    VIEWER = "viewer"


class AuthProvider(StrEnum):
    LOCAL = "local"
    ENTRA_ID = "entra_id"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(String(32), nullable=False, default=UserRole.USER)
    auth_provider: Mapped[AuthProvider] = mapped_column(
        String(32), nullable=False, default=AuthProvider.LOCAL
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    avatar_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Directory object id (Entra "oid"); NULL for local accounts
    external_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        comment="Identity provider object id",
    )
    groups: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    mfa_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Invite flow
    invite_token: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    invite_expires: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invite_accepted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Password reset flow
    reset_token: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    reset_expires: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
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

    __table_args__ = (
        Index("ix_users_role", "role"),
        Index("ix_users_provider_active", "auth_provider", "is_active"),
    )

    @property
    def is_federated(self) -> bool:
        return self.auth_provider != AuthProvider.LOCAL

    def to_public_dict(self) -> dict[str, Any]:
        """Client-safe view: never includes the password hash or tokens."""
        return {
            "id": str(self.id),
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "auth_provider": self.auth_provider,
            "is_active": self.is_active,
            "avatar_url": self.avatar_url,
            "job_title": self.job_title,
            "department": self.department,
            "phone": self.phone,
            "external_id": self.external_id,
            "groups": list(self.groups or []),
            "mfa_enabled": self.mfa_enabled,
            "email_verified": self.email_verified,
            "invite_accepted": self.invite_accepted,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role}>"
