"""BootstrapMarker model - proof that first-run setup has been claimed.

The table holds at most one row, keyed by a fixed primary key. POST
/auth/setup inserts it in the same transaction as the first platform_admin,
so a second concurrent setup fails on the primary key instead of creating
another administrator.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from identity_core.database import Base

BOOTSTRAP_MARKER_ID = 1


class BootstrapMarker(Base):
    __tablename__ = "bootstrap_marker"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    initialized_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    initialized_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<BootstrapMarker initialized_at={self.initialized_at!s}>"
