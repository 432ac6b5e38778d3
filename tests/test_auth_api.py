"""Tests for local authentication endpoints.

Tests cover:
- First-run setup succeeds exactly once
- Login / logout / me / verify
- Self-service profile and password change
- Forgot / reset password with enumeration-resistant answers
- Invite validation and acceptance
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from httpx import AsyncClient
from sqlalchemy import insert, select

from identity_core.models.audit import AuditLogEntry
from identity_core.models.organization import Organization
from identity_core.models.system import BOOTSTRAP_MARKER_ID, BootstrapMarker
from identity_core.models.user import User, UserRole
from tests.conftest import STRONG_PASSWORD


async def _actions(db_session) -> list[str]:
    result = await db_session.execute(select(AuditLogEntry.action).order_by(AuditLogEntry.created_at))
    return list(result.scalars().all())


class TestSetup:
    """POST /auth/setup bootstraps the first platform_admin."""

    @pytest.mark.asyncio
    async def test_setup_creates_platform_admin_and_session(self, client: AsyncClient, db_session) -> None:
        response = await client.post(
            "/api/v1/auth/setup",
            json={
                "email": "Founder@Example.com",
                "password": STRONG_PASSWORD,
                "displayName": "Founder",
                "organizationName": "Acme Corp",
            },
        )
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["email"] == "founder@example.com"
        assert user["role"] == "platform_admin"
        assert "password_hash" not in user
        assert client.cookies.get("token")

        org = (await db_session.execute(select(Organization))).scalar_one()
        assert org.slug == "acme-corp"
        assert "system.initialized" in await _actions(db_session)

        me = await client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["user"]["email"] == "founder@example.com"

    @pytest.mark.asyncio
    async def test_second_setup_is_rejected(self, client: AsyncClient) -> None:
        first = await client.post(
            "/api/v1/auth/setup",
            json={"email": "a@example.com", "password": STRONG_PASSWORD, "displayName": "A"},
        )
        assert first.status_code == 201

        second = await client.post(
            "/api/v1/auth/setup",
            json={"email": "b@example.com", "password": STRONG_PASSWORD, "displayName": "B"},
        )
        assert second.status_code == 409
        assert second.json()["error"] == {"code": "conflict", "message": "already initialized"}

    @pytest.mark.asyncio
    async def test_setup_enforces_password_policy(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/auth/setup",
            json={"email": "a@example.com", "password": "short", "displayName": "A"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


    @pytest.mark.asyncio
    async def test_failed_setup_does_not_claim_the_marker(self, client: AsyncClient) -> None:
        weak = await client.post(
            "/api/v1/auth/setup",
            json={"email": "a@example.com", "password": "short", "displayName": "A"},
        )
        assert weak.status_code == 400

        retry = await client.post(
            "/api/v1/auth/setup",
            json={"email": "a@example.com", "password": STRONG_PASSWORD, "displayName": "A"},
        )
        assert retry.status_code == 201

    @pytest.mark.asyncio
    async def test_marker_claimed_by_a_concurrent_setup(self, client: AsyncClient, db_session) -> None:
        # Another setup holds the marker but has not created its admin yet.
        await db_session.execute(
            insert(BootstrapMarker).values(id=BOOTSTRAP_MARKER_ID, initialized_at=datetime.now(UTC))
        )
        await db_session.commit()

        response = await client.post(
            "/api/v1/auth/setup",
            json={"email": "b@example.com", "password": STRONG_PASSWORD, "displayName": "B"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "already initialized"
        assert (await db_session.execute(select(User))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_marker_records_the_first_admin(self, client: AsyncClient, db_session) -> None:
        response = await client.post(
            "/api/v1/auth/setup",
            json={"email": "a@example.com", "password": STRONG_PASSWORD, "displayName": "A"},
        )
        marker = (await db_session.execute(select(BootstrapMarker))).scalar_one()
        assert str(marker.initialized_by) == response.json()["user"]["id"]


class TestLogin:
    """Email + password login and session handling."""

    @pytest.mark.asyncio
    async def test_login_sets_cookie_and_stamps_last_login(self, client: AsyncClient, make_user, db_session) -> None:
        user = await make_user("alice@example.com")
        assert user.last_login_at is None

        response = await client.post(
            "/api/v1/auth/login",
            json={"email": "ALICE@example.com", "password": STRONG_PASSWORD},
        )
        assert response.status_code == 200
        assert response.json()["user"]["id"] == str(user.id)
        assert "httponly" in response.headers["set-cookie"].lower()
        assert "samesite=lax" in response.headers["set-cookie"].lower()

        await db_session.refresh(user)
        assert user.last_login_at is not None
        assert "auth.login" in await _actions(db_session)

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_email_look_the_same(self, client: AsyncClient, make_user) -> None:
        await make_user("alice@example.com")

        wrong = await client.post(
            "/api/v1/auth/login", json={"email": "alice@example.com", "password": "Wrong-password-1"}
        )
        unknown = await client.post(
            "/api/v1/auth/login", json={"email": "nobody@example.com", "password": STRONG_PASSWORD}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    @pytest.mark.asyncio
    async def test_disabled_account_cannot_log_in(self, client: AsyncClient, make_user) -> None:
        await make_user("gone@example.com", is_active=False)
        response = await client.post(
            "/api/v1/auth/login", json={"email": "gone@example.com", "password": STRONG_PASSWORD}
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_federated_account_cannot_use_password_login(self, client: AsyncClient, make_user) -> None:
        await make_user("fed@example.com", federated=True, external_id="oid-fed")
        response = await client.post(
            "/api/v1/auth/login", json={"email": "fed@example.com", "password": STRONG_PASSWORD}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_me_requires_session(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/auth/me")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_logout_clears_cookie(self, client: AsyncClient, make_user) -> None:
        await make_user("alice@example.com")
        await client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD})

        response = await client.post("/api/v1/auth/logout")
        assert response.status_code == 200
        assert "token=" in response.headers["set-cookie"]
        assert client.cookies.get("token") is None


class TestVerify:
    """GET /auth/verify is the token-verification contract for other services."""

    @pytest.mark.asyncio
    async def test_valid_bearer_token(self, client: AsyncClient, make_user, auth_headers) -> None:
        user = await make_user("svc@example.com", UserRole.IT_OPERATIONS)
        response = await client.get("/api/v1/auth/verify", headers=auth_headers(user))
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["payload"]["user_id"] == str(user.id)
        assert body["payload"]["role"] == "it_operations"

    @pytest.mark.asyncio
    async def test_missing_or_garbage_token(self, client: AsyncClient) -> None:
        missing = await client.get("/api/v1/auth/verify")
        garbage = await client.get("/api/v1/auth/verify", headers={"Authorization": "Bearer not-a-jwt"})
        assert missing.status_code == garbage.status_code == 401
        assert missing.json() == {"valid": False}
        assert garbage.json() == {"valid": False}


class TestProfileAndPasswords:
    """Self-service account management."""

    @pytest.mark.asyncio
    async def test_profile_update_is_audited(self, client: AsyncClient, make_user, auth_headers, db_session) -> None:
        user = await make_user("alice@example.com")
        response = await client.patch(
            "/api/v1/auth/profile",
            json={"displayName": "Alice Smith", "jobTitle": "CTO"},
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        assert response.json()["user"]["display_name"] == "Alice Smith"
        assert response.json()["user"]["job_title"] == "CTO"
        assert "user.profile_updated" in await _actions(db_session)

    @pytest.mark.asyncio
    async def test_change_password(self, client: AsyncClient, make_user, auth_headers) -> None:
        user = await make_user("alice@example.com")
        headers = auth_headers(user)

        wrong = await client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": "Not-the-password-1", "newPassword": "BrandNewPass99x"},
            headers=headers,
        )
        assert wrong.status_code == 401

        ok = await client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "BrandNewPass99x"},
            headers=headers,
        )
        assert ok.status_code == 200

        login = await client.post(
            "/api/v1/auth/login", json={"email": "alice@example.com", "password": "BrandNewPass99x"}
        )
        assert login.status_code == 200

    @pytest.mark.asyncio
    async def test_forgot_password_answers_generically(self, client: AsyncClient, make_user) -> None:
        await make_user("alice@example.com")
        known = await client.post("/api/v1/auth/forgot-password", json={"email": "alice@example.com"})
        unknown = await client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    @pytest.mark.asyncio
    async def test_reset_password_consumes_token(self, client: AsyncClient, make_user, db_session) -> None:
        user = await make_user("alice@example.com")
        await client.post("/api/v1/auth/forgot-password", json={"email": "alice@example.com"})
        await db_session.refresh(user)
        token = user.reset_token
        assert token

        response = await client.post(
            "/api/v1/auth/reset-password", json={"token": token, "password": "ResetPassword77z"}
        )
        assert response.status_code == 200

        reused = await client.post(
            "/api/v1/auth/reset-password", json={"token": token, "password": "ResetPassword77z"}
        )
        assert reused.status_code == 400
        assert reused.json()["error"]["message"] == "Invalid or expired reset link"

        login = await client.post(
            "/api/v1/auth/login", json={"email": "alice@example.com", "password": "ResetPassword77z"}
        )
        assert login.status_code == 200


class TestInvites:
    """Admin invite -> validate -> accept."""

    @pytest.mark.asyncio
    async def test_invite_round_trip(self, admin_client: AsyncClient, db_session) -> None:
        invite = await admin_client.post(
            "/api/v1/users/invite",
            json={"email": "newbie@example.com", "displayName": "Newbie", "role": "viewer"},
        )
        assert invite.status_code == 201
        invite_url = invite.json()["invite_url"]
        assert invite_url.startswith("http://app.test/invite?token=")
        token = invite_url.split("token=", 1)[1]

        check = await admin_client.get("/api/v1/auth/invite/validate", params={"token": token})
        assert check.status_code == 200
        assert check.json() == {"valid": True, "email": "newbie@example.com", "display_name": "Newbie"}

        accept = await admin_client.post(
            "/api/v1/auth/invite/accept",
            json={"token": token, "password": "WelcomeAboard12"},
        )
        assert accept.status_code == 200
        assert accept.json()["user"]["invite_accepted"] is True
        assert accept.json()["user"]["role"] == "viewer"

        again = await admin_client.get("/api/v1/auth/invite/validate", params={"token": token})
        assert again.status_code == 400

        actions = await _actions(db_session)
        assert "user.invited" in actions
        assert "user.invite_accepted" in actions

    @pytest.mark.asyncio
    async def test_unknown_invite_token(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/auth/invite/validate", params={"token": "nope"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid or expired invite link"
