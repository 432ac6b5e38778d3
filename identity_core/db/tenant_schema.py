"""Table layout of an isolated tenant database.

These tables live on their own MetaData, separate from the control-plane
Base, because they are created inside each tenant's database rather than in
the shared one. Indexes are declared explicitly so the provisioner can check
and create them one by one.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
)

TENANT_SCHEMA_VERSION = "1.0.0"

tenant_metadata = MetaData()

users = Table(
    "users",
    tenant_metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False),
    Column("display_name", String(255), nullable=True),
    Column("role", String(32), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

dashboards = Table(
    "dashboards",
    tenant_metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("layout", JSON, nullable=False, default=dict),
    Column("created_by", String(36), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

widgets = Table(
    "widgets",
    tenant_metadata,
    Column("id", String(36), primary_key=True),
    Column("dashboard_id", String(36), nullable=False),
    Column("kind", String(64), nullable=False),
    Column("config", JSON, nullable=False, default=dict),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

audit_logs = Table(
    "audit_logs",
    tenant_metadata,
    Column("id", String(36), primary_key=True),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("user_id", String(36), nullable=True),
    Column("action", String(128), nullable=False),
    Column("details", JSON, nullable=False, default=dict),
)

settings = Table(
    "settings",
    tenant_metadata,
    Column("key", String(128), primary_key=True),
    Column("value", Text, nullable=False),
)

# Declared against the tables; the provisioner verifies each one by name.
TENANT_INDEXES: tuple[Index, ...] = (
    Index("ux_users_email", users.c.email, unique=True),
    Index("ix_users_role", users.c.role),
    Index("ix_dashboards_created_by", dashboards.c.created_by),
    Index("ix_widgets_dashboard_id", widgets.c.dashboard_id),
    Index("ix_audit_logs_timestamp", audit_logs.c.timestamp),
    Index("ix_audit_logs_user_id", audit_logs.c.user_id),
)

TENANT_TABLES: tuple[Table, ...] = (users, dashboards, widgets, audit_logs, settings)
