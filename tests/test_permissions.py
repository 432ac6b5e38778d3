"""Tests for applet permission resolution and administrator overrides.

Tests cover:
- Defaults from the applet manifest per role
- Override replaces the role's set; deleting it restores the default
- Unknown keys and roles are rejected with the offending values
- Override endpoints are platform_admin only
- require_permission dependency
"""

from __future__ import annotations

import pytest
from fastapi import Depends
from httpx import AsyncClient

from identity_core.auth.dependencies import AuthenticatedUser
from identity_core.core.applets import (
    SEO_APPLET_ID,
    AppletManifest,
    AppletRegistry,
    PermissionDef,
    default_registry,
)
from identity_core.core.errors import NotFoundError, ValidationError
from identity_core.models.user import UserRole
from identity_core.services.permissions import (
    PermissionOverrideCache,
    PermissionResolver,
    require_permission,
)

VIEWER_DEFAULT = ["seo:analysis:read", "seo:content:read", "seo:images:read"]
BASE = f"/api/v1/permissions/{SEO_APPLET_ID}"


@pytest.fixture
def resolver() -> PermissionResolver:
    return PermissionResolver(default_registry(), PermissionOverrideCache())


class TestManifest:
    def test_defaults_must_reference_declared_keys(self) -> None:
        manifest = AppletManifest(
            applet_id="broken",
            name="Broken",
            permissions=(PermissionDef("broken:a:read", "Read"),),
            default_role_permissions={"viewer": ("broken:a:write",)},
        )
        with pytest.raises(ValueError):
            AppletRegistry([manifest])

    def test_unknown_applet(self) -> None:
        with pytest.raises(NotFoundError):
            default_registry().get("nope")


class TestResolver:
    @pytest.mark.asyncio
    async def test_override_then_delete_restores_default(self, resolver, db_session) -> None:
        assert await resolver.resolve(db_session, SEO_APPLET_ID, "viewer") == VIEWER_DEFAULT

        await resolver.set_override(db_session, SEO_APPLET_ID, "viewer", ["seo:content:read"])
        assert await resolver.resolve(db_session, SEO_APPLET_ID, "viewer") == ["seo:content:read"]
        # Other roles keep their defaults
        assert "seo:analysis:run" in await resolver.resolve(db_session, SEO_APPLET_ID, "user")

        assert await resolver.delete_override(db_session, SEO_APPLET_ID, "viewer") is True
        assert await resolver.resolve(db_session, SEO_APPLET_ID, "viewer") == VIEWER_DEFAULT
        assert await resolver.delete_override(db_session, SEO_APPLET_ID, "viewer") is False

    @pytest.mark.asyncio
    async def test_empty_override_is_respected(self, resolver, db_session) -> None:
        await resolver.set_override(db_session, SEO_APPLET_ID, "user", [])
        assert await resolver.resolve(db_session, SEO_APPLET_ID, "user") == []

    @pytest.mark.asyncio
    async def test_unknown_role_resolves_to_nothing(self, resolver, db_session) -> None:
        assert await resolver.resolve(db_session, SEO_APPLET_ID, "janitor") == []

    @pytest.mark.asyncio
    async def test_invalid_keys_are_listed(self, resolver, db_session) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await resolver.set_override(
                db_session, SEO_APPLET_ID, "viewer", ["seo:content:read", "seo:rockets:launch"]
            )
        assert exc_info.value.details == {"invalid": ["seo:rockets:launch"]}

    @pytest.mark.asyncio
    async def test_unknown_role_is_rejected(self, resolver, db_session) -> None:
        with pytest.raises(ValidationError):
            await resolver.set_override(db_session, SEO_APPLET_ID, "janitor", ["seo:content:read"])

    @pytest.mark.asyncio
    async def test_duplicates_are_collapsed(self, resolver, db_session) -> None:
        keys = await resolver.set_override(
            db_session, SEO_APPLET_ID, "viewer", ["seo:content:read", "seo:content:read"]
        )
        assert keys == ["seo:content:read"]

    @pytest.mark.asyncio
    async def test_cache_is_shared_across_resolvers(self, db_session) -> None:
        cache = PermissionOverrideCache()
        writer = PermissionResolver(default_registry(), cache)
        reader = PermissionResolver(default_registry(), cache)

        assert await reader.resolve(db_session, SEO_APPLET_ID, "viewer") == VIEWER_DEFAULT
        assert cache.is_loaded(SEO_APPLET_ID)

        await writer.set_override(db_session, SEO_APPLET_ID, "viewer", ["seo:images:read"])
        assert await reader.resolve(db_session, SEO_APPLET_ID, "viewer") == ["seo:images:read"]

        cache.invalidate(SEO_APPLET_ID)
        assert not cache.is_loaded(SEO_APPLET_ID)
        assert await reader.resolve(db_session, SEO_APPLET_ID, "viewer") == ["seo:images:read"]

    @pytest.mark.asyncio
    async def test_rolled_back_override_is_not_served(self, db_session) -> None:
        cache = PermissionOverrideCache()
        writer = PermissionResolver(default_registry(), cache)

        await writer.set_override(db_session, SEO_APPLET_ID, "viewer", ["seo:analysis:read"])
        assert await writer.resolve(db_session, SEO_APPLET_ID, "viewer") == ["seo:analysis:read"]
        await db_session.rollback()

        assert not cache.is_loaded(SEO_APPLET_ID)
        assert await writer.resolve(db_session, SEO_APPLET_ID, "viewer") == VIEWER_DEFAULT

    @pytest.mark.asyncio
    async def test_rolled_back_delete_keeps_override(self, db_session) -> None:
        cache = PermissionOverrideCache()
        resolver = PermissionResolver(default_registry(), cache)
        await resolver.set_override(db_session, SEO_APPLET_ID, "viewer", ["seo:images:read"])
        await db_session.commit()

        assert await resolver.delete_override(db_session, SEO_APPLET_ID, "viewer") is True
        await db_session.rollback()

        assert await resolver.resolve(db_session, SEO_APPLET_ID, "viewer") == ["seo:images:read"]

    @pytest.mark.asyncio
    async def test_commit_reloads_stored_state(self, db_session) -> None:
        cache = PermissionOverrideCache()
        resolver = PermissionResolver(default_registry(), cache)
        await resolver.set_override(db_session, SEO_APPLET_ID, "viewer", ["seo:content:read"])
        await db_session.commit()

        assert not cache.is_loaded(SEO_APPLET_ID)
        fresh = PermissionResolver(default_registry(), PermissionOverrideCache())
        assert await resolver.resolve(db_session, SEO_APPLET_ID, "viewer") == ["seo:content:read"]
        assert await fresh.resolve(db_session, SEO_APPLET_ID, "viewer") == ["seo:content:read"]

    @pytest.mark.asyncio
    async def test_role_mappings_tag_source(self, resolver, db_session) -> None:
        await resolver.set_override(db_session, SEO_APPLET_ID, "viewer", ["seo:content:read"])
        mappings = await resolver.role_mappings(db_session, SEO_APPLET_ID)
        assert mappings["viewer"] == {"permissions": ["seo:content:read"], "source": "override"}
        assert mappings["admin"]["source"] == "default"
        assert list(mappings)[0] == "platform_admin"


class TestPermissionApi:
    @pytest.mark.asyncio
    async def test_override_round_trip(self, admin_client: AsyncClient, make_user, auth_headers) -> None:
        viewer = await make_user("viewer@example.com", UserRole.VIEWER)
        viewer_headers = auth_headers(viewer)

        before = await admin_client.get(f"{BASE}/me", headers=viewer_headers)
        assert before.json() == {"applet_id": SEO_APPLET_ID, "role": "viewer", "permissions": VIEWER_DEFAULT}

        put = await admin_client.put(
            f"{BASE}/override", json={"role": "viewer", "permissions": ["seo:content:read"]}
        )
        assert put.status_code == 200
        assert put.json()["source"] == "override"

        during = await admin_client.get(f"{BASE}/me", headers=viewer_headers)
        assert during.json()["permissions"] == ["seo:content:read"]

        mappings = await admin_client.get(BASE)
        assert mappings.json()["role_mappings"]["viewer"]["source"] == "override"
        assert mappings.json()["applet"]["name"] == "SEO Optimizer"

        deleted = await admin_client.delete(f"{BASE}/override/viewer")
        assert deleted.status_code == 200
        assert deleted.json()["removed"] is True
        assert deleted.json()["permissions"] == VIEWER_DEFAULT

        after = await admin_client.get(f"{BASE}/me", headers=viewer_headers)
        assert after.json()["permissions"] == VIEWER_DEFAULT

        logs = await admin_client.get("/api/v1/users/audit/logs", params={"category": "system"})
        actions = [e["action"] for e in logs.json()["data"]]
        assert sorted(actions) == ["permissions.override_deleted", "permissions.override_set"]

    @pytest.mark.asyncio
    async def test_invalid_keys_return_400(self, admin_client: AsyncClient) -> None:
        response = await admin_client.put(
            f"{BASE}/override", json={"role": "viewer", "permissions": ["seo:nope:nope"]}
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"invalid": ["seo:nope:nope"]}

    @pytest.mark.asyncio
    async def test_unknown_applet_is_404(self, admin_client: AsyncClient) -> None:
        response = await admin_client.get("/api/v1/permissions/unknown-applet")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_cannot_override(self, client: AsyncClient, make_user, auth_headers) -> None:
        admin = await make_user("admin@example.com", UserRole.ADMIN)
        headers = auth_headers(admin)

        # admin may read the mappings ...
        assert (await client.get(BASE, headers=headers)).status_code == 200
        # ... but only platform_admin may change them
        response = await client.put(
            f"{BASE}/override", json={"role": "viewer", "permissions": []}, headers=headers
        )
        assert response.status_code == 403
        assert (await client.delete(f"{BASE}/override/viewer", headers=headers)).status_code == 403


class TestRequirePermission:
    @pytest.mark.asyncio
    async def test_gate_follows_overrides(self, test_app, admin_client: AsyncClient, make_user, auth_headers) -> None:
        @test_app.post("/seo/analyze")
        async def analyze(
            current_user: AuthenticatedUser = Depends(require_permission(SEO_APPLET_ID, "seo:analysis:run")),
        ) -> dict:
            return {"ok": True}

        analyst = await make_user("analyst@example.com", UserRole.SECURITY_ANALYST)
        viewer = await make_user("viewer@example.com", UserRole.VIEWER)

        assert (await admin_client.post("/seo/analyze", headers=auth_headers(analyst))).status_code == 200

        denied = await admin_client.post("/seo/analyze", headers=auth_headers(viewer))
        assert denied.status_code == 403
        assert denied.json()["error"]["details"] == {"missing": ["seo:analysis:run"], "role": "viewer"}

        await admin_client.put(
            f"{BASE}/override", json={"role": "viewer", "permissions": ["seo:analysis:run"]}
        )
        assert (await admin_client.post("/seo/analyze", headers=auth_headers(viewer))).status_code == 200
