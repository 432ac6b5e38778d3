"""Tenant registry and provisioner.

TenantRegistry owns the control-plane records: creation (with the
organization's tenant quota), lookups, updates, decommissioning and the
status state machine. TenantProvisioner owns the isolated database of one
tenant and brings it to the current schema through a resumable checklist:

    database  -> create the database if it does not exist
    tables    -> create missing tenant tables
    indexes   -> create missing indexes, verified by name
    bootstrap -> insert missing bootstrap settings rows

Every step checks before it creates, so a provisioning attempt that failed
half-way is simply run again.
"""

from __future__ import annotations

import re
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import func, inspect, insert, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.config import Settings, get_settings
from identity_core.core.errors import (
    AlreadyProvisionedError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    QuotaExceededError,
    ValidationError,
)
from identity_core.db.tenant_connections import TenantConnectionFactory
from identity_core.db.tenant_schema import (
    TENANT_INDEXES,
    TENANT_SCHEMA_VERSION,
    TENANT_TABLES,
)
from identity_core.db.tenant_schema import settings as settings_table
from identity_core.models.organization import Organization
from identity_core.models.tenant import Tenant, TenantStatus, default_tenant_settings
from identity_core.telemetry import bind_tenant_context

log = structlog.get_logger(__name__)

TENANT_ID_PREFIX = "tnt_"
TENANT_ID_ALPHABET = string.ascii_lowercase + string.digits
TENANT_ID_LENGTH = 8
TENANT_ID_RE = re.compile(r"^tnt_[a-z0-9]{8}$")

PROVISIONING_STEPS = ("database", "tables", "indexes", "bootstrap")

ALLOWED_TRANSITIONS: dict[TenantStatus, frozenset[TenantStatus]] = {
    TenantStatus.PROVISIONING: frozenset({TenantStatus.ACTIVE, TenantStatus.DECOMMISSIONED}),
    TenantStatus.ACTIVE: frozenset({TenantStatus.SUSPENDED, TenantStatus.DECOMMISSIONED}),
    TenantStatus.SUSPENDED: frozenset({TenantStatus.ACTIVE, TenantStatus.DECOMMISSIONED}),
    TenantStatus.DECOMMISSIONED: frozenset(),
}

_TENANT_SETTING_KEYS = ("max_users", "storage_quota_mb", "features", "custom_domain")


def generate_tenant_id() -> str:
    """'tnt_' followed by 8 characters from [a-z0-9], from a CSPRNG."""
    suffix = "".join(secrets.choice(TENANT_ID_ALPHABET) for _ in range(TENANT_ID_LENGTH))
    return f"{TENANT_ID_PREFIX}{suffix}"


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    if not slug:
        raise ValidationError("Tenant name must contain letters or digits")
    return slug[:128]


class IdentifierKind(StrEnum):
    TENANT_ID = "tenant_id"
    RECORD_ID = "record_id"


def classify_identifier(identifier: str) -> tuple[IdentifierKind, str | uuid.UUID]:
    """Decide whether a path identifier is a business id or a record id."""
    if TENANT_ID_RE.match(identifier or ""):
        return IdentifierKind.TENANT_ID, identifier
    try:
        return IdentifierKind.RECORD_ID, uuid.UUID(identifier)
    except (ValueError, TypeError, AttributeError) as exc:
        raise NotFoundError("Tenant not found") from exc


def check_transition(current: str, target: str) -> TenantStatus:
    try:
        target_status = TenantStatus(target)
    except ValueError as exc:
        raise ValidationError(f"Unknown tenant status: {target}") from exc
    current_status = TenantStatus(current)
    if target_status == current_status:
        return target_status
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise ValidationError(
            f"Cannot change tenant status from {current_status} to {target_status}",
            details={"from": current_status.value, "to": target_status.value},
        )
    return target_status


def merge_tenant_settings(overrides: dict[str, Any] | None) -> dict[str, Any]:
    merged = default_tenant_settings()
    for key in _TENANT_SETTING_KEYS:
        if overrides and overrides.get(key) is not None:
            merged[key] = overrides[key]
    return merged


def tenant_to_dict(tenant: Tenant, organization: Organization | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(tenant.id),
        "tenant_id": tenant.tenant_id,
        "name": tenant.name,
        "slug": tenant.slug,
        "description": tenant.description,
        "organization_id": str(tenant.organization_id),
        "status": tenant.status,
        "database": {
            "name": tenant.db_name,
            "host": tenant.db_host,
            "port": tenant.db_port,
            "provisioned": tenant.db_provisioned,
            "provisioned_at": tenant.db_provisioned_at.isoformat() if tenant.db_provisioned_at else None,
        },
        "settings": dict(tenant.settings or {}),
        "metadata": dict(tenant.metadata_ or {}),
        "created_by": str(tenant.created_by) if tenant.created_by else None,
        "created_at": tenant.created_at.isoformat() if tenant.created_at else None,
        "updated_at": tenant.updated_at.isoformat() if tenant.updated_at else None,
    }
    if organization is not None:
        data["organization"] = {
            "id": str(organization.id),
            "name": organization.name,
            "slug": organization.slug,
        }
    return data


# ------------------------------------------------------------------ #
# Provisioner
# ------------------------------------------------------------------ #


@dataclass
class ProvisioningReport:
    """Outcome of each checklist step: 'created' or 'present'."""

    db_name: str
    steps: dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return all(step in self.steps for step in PROVISIONING_STEPS)


def _create_missing_tables(sync_conn: Connection) -> list[str]:
    existing = set(inspect(sync_conn).get_table_names())
    created = []
    for table in TENANT_TABLES:
        if table.name not in existing:
            table.create(sync_conn)
            created.append(table.name)
    return created


def _create_missing_indexes(sync_conn: Connection) -> list[str]:
    inspector = inspect(sync_conn)
    existing: set[str] = set()
    for table in TENANT_TABLES:
        existing.update(ix["name"] for ix in inspector.get_indexes(table.name) if ix.get("name"))
    created = []
    for index in TENANT_INDEXES:
        if index.name not in existing:
            index.create(sync_conn)
            created.append(str(index.name))
    return created


class TenantProvisioner:
    """Creates and prepares a tenant's isolated database."""

    def __init__(self, connections: TenantConnectionFactory) -> None:
        self.connections = connections

    async def provision(self, tenant: Tenant) -> ProvisioningReport:
        """Run the checklist against the tenant's database.

        Raises ProvisioningError naming the failed step; steps that already
        completed are detected as present on the next attempt.
        """
        report = ProvisioningReport(db_name=tenant.db_name)
        step = "database"
        try:
            created_db = await self.connections.ensure_database(
                tenant.db_name, host=tenant.db_host, port=tenant.db_port
            )
            report.steps["database"] = "created" if created_db else "present"

            async with self.connections.connect(
                tenant.db_name, host=tenant.db_host, port=tenant.db_port
            ) as conn:
                step = "tables"
                tables = await conn.run_sync(_create_missing_tables)
                report.steps["tables"] = "created" if tables else "present"

                step = "indexes"
                indexes = await conn.run_sync(_create_missing_indexes)
                report.steps["indexes"] = "created" if indexes else "present"

                step = "bootstrap"
                report.steps["bootstrap"] = await self._bootstrap(conn, tenant)
        except (SQLAlchemyError, OSError, ValueError) as exc:
            log.error(
                "tenant.provisioning_failed",
                tenant_id=tenant.tenant_id,
                db_name=tenant.db_name,
                step=step,
                error=str(exc),
            )
            raise ProvisioningError(
                f"Provisioning failed at step '{step}'",
                details={"tenant_id": tenant.tenant_id, "step": step},
            ) from exc

        log.info("tenant.provisioned", tenant_id=tenant.tenant_id, db_name=tenant.db_name, steps=report.steps)
        return report

    async def _bootstrap(self, conn: Any, tenant: Tenant) -> str:
        rows = {
            "tenant_id": tenant.tenant_id,
            "tenant_name": tenant.name,
            "provisioned_at": datetime.now(UTC).isoformat(),
            "version": TENANT_SCHEMA_VERSION,
        }
        existing = set((await conn.execute(select(settings_table.c.key))).scalars().all())
        missing = [{"key": k, "value": v} for k, v in rows.items() if k not in existing]
        if not missing:
            return "present"
        await conn.execute(insert(settings_table), missing)
        return "created"


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #


class TenantRegistry:
    """Control-plane tenant operations."""

    def __init__(
        self,
        db: AsyncSession,
        provisioner: TenantProvisioner,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.provisioner = provisioner
        self.settings = settings or get_settings()

    async def _organization(self) -> Organization:
        result = await self.db.execute(select(Organization).order_by(Organization.created_at).limit(1))
        org = result.scalar_one_or_none()
        if org is None:
            raise ConfigurationError("Organization must be configured before creating tenants")
        return org

    async def count_active_tenants(self, organization_id: uuid.UUID | None = None) -> int:
        stmt = select(func.count()).select_from(Tenant).where(
            Tenant.status != TenantStatus.DECOMMISSIONED
        )
        if organization_id is not None:
            stmt = stmt.where(Tenant.organization_id == organization_id)
        return int((await self.db.execute(stmt)).scalar_one())

    async def _ensure_slug_free(self, slug: str, exclude_id: uuid.UUID | None = None) -> None:
        stmt = select(Tenant.id).where(Tenant.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(Tenant.id != exclude_id)
        if (await self.db.execute(stmt)).first() is not None:
            raise ConflictError("A tenant with this name/slug already exists", details={"slug": slug})

    async def _unused_tenant_id(self) -> str:
        while True:
            candidate = generate_tenant_id()
            taken = await self.db.execute(select(Tenant.id).where(Tenant.tenant_id == candidate))
            if taken.first() is None:
                return candidate

    async def create_tenant(
        self,
        *,
        name: str,
        description: str | None = None,
        settings: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: uuid.UUID | None = None,
    ) -> tuple[Tenant, Organization]:
        """Persist a tenant in 'provisioning' and try to provision it.

        A provisioning failure is logged and leaves the tenant in
        'provisioning' for a later retry_provisioning() call.
        """
        if not (name or "").strip():
            raise ValidationError("Tenant name is required")
        name = name.strip()

        org = await self._organization()
        current = await self.count_active_tenants(org.id)
        if current >= org.max_tenants:
            raise QuotaExceededError(
                f"Tenant limit reached ({org.max_tenants}). Upgrade your plan.",
                details={"max_tenants": org.max_tenants, "current": current},
            )

        slug = slugify(name)
        await self._ensure_slug_free(slug)

        tenant_id = await self._unused_tenant_id()
        tenant = Tenant(
            tenant_id=tenant_id,
            name=name,
            slug=slug,
            description=description,
            organization_id=org.id,
            status=TenantStatus.PROVISIONING,
            db_name=f"{self.settings.tenant_db_prefix}{tenant_id}",
            db_host=self.settings.tenant_db_host,
            db_port=self.settings.tenant_db_port,
            db_provisioned=False,
            settings=merge_tenant_settings(settings),
            metadata_=dict(metadata or {}),
            created_by=created_by,
        )
        self.db.add(tenant)
        await self.db.flush()
        bind_tenant_context(tenant_id)
        log.info("tenant.created", tenant_id=tenant_id, slug=slug)

        try:
            await self._provision(tenant)
        except ProvisioningError:
            # Already logged by the provisioner; the tenant stays retryable.
            pass
        return tenant, org

    async def _provision(self, tenant: Tenant) -> ProvisioningReport:
        report = await self.provisioner.provision(tenant)
        tenant.db_provisioned = True
        tenant.db_provisioned_at = datetime.now(UTC)
        if tenant.status == TenantStatus.PROVISIONING:
            tenant.status = check_transition(tenant.status, TenantStatus.ACTIVE)
        await self.db.flush()
        return report

    async def get_tenant(self, identifier: str) -> Tenant:
        kind, value = classify_identifier(identifier)
        column = Tenant.tenant_id if kind == IdentifierKind.TENANT_ID else Tenant.id
        result = await self.db.execute(select(Tenant).where(column == value))
        tenant = result.scalar_one_or_none()
        if tenant is None:
            raise NotFoundError("Tenant not found")
        return tenant

    async def get_organization(self, tenant: Tenant) -> Organization | None:
        return await self.db.get(Organization, tenant.organization_id)

    async def list_tenants(
        self,
        *,
        status: str | None = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[Tenant], int]:
        filters = []
        if status:
            filters.append(Tenant.status == status)
        stmt = (
            select(Tenant)
            .where(*filters)
            .order_by(Tenant.created_at.desc(), Tenant.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        total = (await self.db.execute(select(func.count()).select_from(Tenant).where(*filters))).scalar_one()
        return list(rows), int(total)

    async def update_tenant(
        self,
        identifier: str,
        *,
        name: str | None = None,
        description: str | None = None,
        status: str | None = None,
        settings: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Tenant, dict[str, Any]]:
        """Apply changes; renaming re-slugs, status goes through the state machine."""
        tenant = await self.get_tenant(identifier)
        changes: dict[str, Any] = {}

        if name is not None and name.strip() and name.strip() != tenant.name:
            slug = slugify(name)
            await self._ensure_slug_free(slug, exclude_id=tenant.id)
            tenant.name = name.strip()
            tenant.slug = slug
            changes.update(name=tenant.name, slug=slug)
        if description is not None:
            tenant.description = description
            changes["description"] = description
        if status is not None and status != tenant.status:
            tenant.status = check_transition(tenant.status, status)
            changes["status"] = tenant.status.value
        if settings is not None:
            merged = dict(tenant.settings or {})
            merged.update({k: v for k, v in settings.items() if k in _TENANT_SETTING_KEYS})
            tenant.settings = merged
            changes["settings"] = merged
        if metadata is not None:
            tenant.metadata_ = dict(metadata)
            changes["metadata"] = tenant.metadata_

        await self.db.flush()
        log.info("tenant.updated", tenant_id=tenant.tenant_id, fields=sorted(changes))
        return tenant, changes

    async def decommission(self, identifier: str) -> Tenant:
        tenant = await self.get_tenant(identifier)
        tenant.status = check_transition(tenant.status, TenantStatus.DECOMMISSIONED)
        await self.db.flush()
        log.info("tenant.decommissioned", tenant_id=tenant.tenant_id)
        return tenant

    async def retry_provisioning(self, identifier: str) -> tuple[Tenant, ProvisioningReport]:
        """Provision a tenant whose database is not ready yet.

        Raises AlreadyProvisionedError, without touching the record, when
        the database is already provisioned.
        """
        tenant = await self.get_tenant(identifier)
        if tenant.db_provisioned:
            raise AlreadyProvisionedError("Database already provisioned")
        if tenant.status == TenantStatus.DECOMMISSIONED:
            raise ValidationError("Cannot provision a decommissioned tenant")
        report = await self._provision(tenant)
        return tenant, report
