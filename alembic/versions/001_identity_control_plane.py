"""Create the control-plane schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Adds:
- organizations         - singleton owner of all tenants, subscription limits
- users                 - local and federated identities
- tenants               - isolation units and their database descriptors
- sso_configs           - federation provider configuration, one row per provider
- permission_overrides  - per (applet, role) replacement of default permissions
- audit_log_entries     - append-only security audit trail

Tenant databases are not managed here; they are created and brought to the
tenant schema by the tenant provisioner.
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(128), nullable=False, unique=True),
        sa.Column("domain", sa.String(255), nullable=True),
        sa.Column("logo_url", sa.String(1024), nullable=True),
        sa.Column("primary_color", sa.String(16), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("locale", sa.String(16), nullable=False),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("contact", sa.JSON(), nullable=False),
        sa.Column("subscription", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(128), nullable=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("auth_provider", sa.String(32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("avatar_url", sa.String(1024), nullable=True),
        sa.Column("job_title", sa.String(255), nullable=True),
        sa.Column("department", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column(
            "external_id",
            sa.String(255),
            nullable=True,
            unique=True,
            comment="Identity provider object id",
        ),
        sa.Column("groups", sa.JSON(), nullable=False),
        sa.Column("mfa_enabled", sa.Boolean(), nullable=False),
        sa.Column("email_verified", sa.Boolean(), nullable=False),
        sa.Column("invite_token", sa.String(128), nullable=True),
        sa.Column("invite_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invite_accepted", sa.Boolean(), nullable=False),
        sa.Column("reset_token", sa.String(128), nullable=True),
        sa.Column("reset_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_provider_active", "users", ["auth_provider", "is_active"])
    op.create_index("ix_users_invite_token", "users", ["invite_token"])
    op.create_index("ix_users_reset_token", "users", ["reset_token"])

    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(16),
            nullable=False,
            comment="Business identifier, e.g. 'tnt_k3x9a0qz'",
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "slug",
            sa.String(128),
            nullable=False,
            comment="URL-safe identifier, e.g. 'acme-corp'",
        ),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("db_name", sa.String(128), nullable=False, unique=True),
        sa.Column("db_host", sa.String(255), nullable=False),
        sa.Column("db_port", sa.Integer(), nullable=False),
        sa.Column("db_provisioned", sa.Boolean(), nullable=False),
        sa.Column("db_provisioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenants_tenant_id", "tenants", ["tenant_id"], unique=True)
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)
    op.create_index("ix_tenants_organization_id", "tenants", ["organization_id"])
    op.create_index("ix_tenants_status", "tenants", ["status"])

    op.create_table(
        "sso_configs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("provider", sa.String(32), nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("client_id", sa.String(255), nullable=False),
        sa.Column("client_secret", sa.Text(), nullable=False),
        sa.Column("redirect_uri", sa.String(1024), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("group_role_map", sa.JSON(), nullable=False),
        sa.Column("auto_provision", sa.Boolean(), nullable=False),
        sa.Column("default_role", sa.String(32), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_result", sa.JSON(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "permission_overrides",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("applet_id", sa.String(128), nullable=False),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("updated_by", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("applet_id", "role", name="uq_permission_overrides_applet_role"),
    )
    op.create_index("ix_permission_overrides_applet_id", "permission_overrides", ["applet_id"])

    op.create_table(
        "audit_log_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("performed_by", sa.JSON(), nullable=False),
        sa.Column("target", sa.JSON(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_log_entries_action", "audit_log_entries", ["action"])
    op.create_index("ix_audit_log_entries_category", "audit_log_entries", ["category"])
    op.create_index("ix_audit_log_entries_created_at", "audit_log_entries", ["created_at"])
    op.create_index(
        "ix_audit_log_entries_category_created",
        "audit_log_entries",
        ["category", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("audit_log_entries")
    op.drop_table("permission_overrides")
    op.drop_table("sso_configs")
    op.drop_table("tenants")
    op.drop_table("users")
    op.drop_table("organizations")
