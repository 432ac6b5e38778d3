"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate or tests call Base.metadata.create_all.
"""

from identity_core.models.audit import AuditCategory, AuditLogEntry
from identity_core.models.organization import Organization, SubscriptionPlan
from identity_core.models.permission_override import PermissionOverride
from identity_core.models.sso_config import MASKED_SECRET, SsoConfig
from identity_core.models.system import BootstrapMarker
from identity_core.models.tenant import Tenant, TenantStatus
from identity_core.models.user import AuthProvider, User, UserRole

__all__ = [
    "AuditCategory",
    "AuditLogEntry",
    "AuthProvider",
    "BootstrapMarker",
    "MASKED_SECRET",
    "Organization",
    "PermissionOverride",
    "SsoConfig",
    "SubscriptionPlan",
    "Tenant",
    "TenantStatus",
    "User",
    "UserRole",
]
