"""Applet manifests - permission keys and default role mappings.

Each pluggable applet declares its own fine-grained permission keys
("<applet>:<area>:<action>") and the permission set each platform role gets
by default. Administrators can replace the set for a role through
PermissionOverride rows; see services.permissions.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from identity_core.core.errors import NotFoundError
from identity_core.models.user import UserRole


@dataclass(frozen=True)
class PermissionDef:
    key: str
    label: str
    description: str = ""
    category: str = "general"


@dataclass(frozen=True)
class AppletManifest:
    applet_id: str
    name: str
    permissions: tuple[PermissionDef, ...]
    default_role_permissions: dict[str, tuple[str, ...]] = field(default_factory=dict)
    version: str = "1.0.0"

    @property
    def keys(self) -> frozenset[str]:
        return frozenset(p.key for p in self.permissions)

    def unknown_keys(self, keys: Iterable[str]) -> list[str]:
        known = self.keys
        return [k for k in keys if k not in known]

    def defaults_for(self, role: str) -> list[str]:
        return list(self.default_role_permissions.get(role, ()))

    def to_dict(self) -> dict[str, object]:
        return {
            "applet_id": self.applet_id,
            "name": self.name,
            "version": self.version,
            "permissions": [
                {
                    "key": p.key,
                    "label": p.label,
                    "description": p.description,
                    "category": p.category,
                }
                for p in self.permissions
            ],
        }


class AppletRegistry:
    """Manifests by applet id."""

    def __init__(self, manifests: Iterable[AppletManifest] = ()) -> None:
        self._manifests: dict[str, AppletManifest] = {}
        for manifest in manifests:
            self.register(manifest)

    def register(self, manifest: AppletManifest) -> None:
        unknown = {
            key
            for keys in manifest.default_role_permissions.values()
            for key in manifest.unknown_keys(keys)
        }
        if unknown:
            raise ValueError(f"{manifest.applet_id}: defaults reference undeclared keys {sorted(unknown)}")
        self._manifests[manifest.applet_id] = manifest

    def get(self, applet_id: str) -> AppletManifest:
        manifest = self._manifests.get(applet_id)
        if manifest is None:
            raise NotFoundError(f"Unknown applet: {applet_id}")
        return manifest


# ------------------------------------------------------------------ #
# Built-in: SEO optimizer
# ------------------------------------------------------------------ #

SEO_APPLET_ID = "seo-optimizer"

_SEO_PERMISSIONS = (
    PermissionDef("seo:analysis:run", "Run Analysis", "Execute PageSpeed and SEO audits", "analysis"),
    PermissionDef("seo:analysis:read", "View Results", "View analysis history and results", "analysis"),
    PermissionDef("seo:content:read", "View Templates", "Browse content templates", "content"),
    PermissionDef("seo:content:generate", "Generate Content", "Create SEO-optimized pages", "content"),
    PermissionDef("seo:content:write", "Edit Content", "Edit generated pages", "content"),
    PermissionDef("seo:images:read", "View Images", "List and view project images", "images"),
    PermissionDef("seo:images:analyze", "Analyze Images", "Run image SEO analysis", "images"),
    PermissionDef("seo:images:manage", "Manage Images", "Rename, optimize and delete images", "images"),
    PermissionDef("seo:project:read", "View Projects", "View project details", "project"),
    PermissionDef("seo:files:read", "Read Files", "Read project files", "files"),
    PermissionDef("seo:files:write", "Write Files", "Create, modify, delete files", "files"),
    PermissionDef("seo:ahrefs:read", "Ahrefs Data", "Access Ahrefs analytics", "ahrefs"),
    PermissionDef("seo:ai:chat", "AI Chat", "Use AI assistant features", "ai"),
    PermissionDef("seo:settings:manage", "Manage Settings", "Modify applet settings", "settings"),
)

_ALL_SEO = tuple(p.key for p in _SEO_PERMISSIONS)

_SEO_OPERATOR = (
    "seo:analysis:run",
    "seo:analysis:read",
    "seo:content:read",
    "seo:content:generate",
    "seo:images:read",
    "seo:images:analyze",
    "seo:project:read",
    "seo:files:read",
    "seo:ahrefs:read",
    "seo:ai:chat",
)

SEO_MANIFEST = AppletManifest(
    applet_id=SEO_APPLET_ID,
    name="SEO Optimizer",
    permissions=_SEO_PERMISSIONS,
    default_role_permissions={
        UserRole.PLATFORM_ADMIN.value: _ALL_SEO,
        UserRole.ADMIN.value: _ALL_SEO,
        UserRole.IT_OPERATIONS.value: _SEO_OPERATOR,
        UserRole.SECURITY_ANALYST.value: (
            "seo:analysis:run",
            "seo:analysis:read",
            "seo:project:read",
            "seo:files:read",
        ),
        UserRole.EXECUTIVE_VIEWER.value: (
            "seo:analysis:read",
            "seo:content:read",
            "seo:images:read",
            "seo:ahrefs:read",
        ),
        UserRole.USER.value: _SEO_OPERATOR,
        UserRole.VIEWER.value: (
            "seo:analysis:read",
            "seo:content:read",
            "seo:images:read",
        ),
    },
)


def default_registry() -> AppletRegistry:
    return AppletRegistry([SEO_MANIFEST])
