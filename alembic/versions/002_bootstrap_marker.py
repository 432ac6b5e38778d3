"""Add the first-run setup marker.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

Adds:
- bootstrap_marker - single row claimed by POST /auth/setup; its fixed
  primary key rejects a second concurrent setup

Installations that were set up before this revision already have users, so
setup stays closed for them through the user-count check.
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "bootstrap_marker",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("initialized_by", sa.Uuid(), nullable=True),
        sa.Column("initialized_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("bootstrap_marker")
