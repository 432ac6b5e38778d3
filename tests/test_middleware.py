"""Tests for authentication middleware.

Coverage:
- AuthMiddleware validates tokens and sets request.state.auth_claims
- The session cookie takes precedence over a Bearer header
- Public paths (/health) skip token extraction
- Missing or invalid tokens leave auth_claims unset and never reject
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from identity_core.auth.middleware import AuthMiddleware
from identity_core.auth.tokens import issue_token


def _claims(email: str) -> dict[str, str]:
    return {"user_id": f"id-{email}", "email": email, "role": "user", "auth_provider": "local"}


async def whoami(request: Request) -> Response:
    """Echo the claims the middleware attached."""
    claims = getattr(request.state, "auth_claims", None)
    if claims is None:
        return JSONResponse({"authenticated": False})
    return JSONResponse({"authenticated": True, "email": claims["email"]})


@pytest.fixture
async def mw_client(test_settings) -> AsyncGenerator[AsyncClient, None]:
    app = Starlette(
        routes=[Route("/whoami", whoami), Route("/health/whoami", whoami)],
    )
    app.state.settings = test_settings
    app.add_middleware(AuthMiddleware)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


class TestAuthMiddleware:
    @pytest.mark.asyncio
    async def test_bearer_token(self, mw_client: AsyncClient, test_settings) -> None:
        token = issue_token(_claims("svc@example.com"), test_settings)
        response = await mw_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
        assert response.json() == {"authenticated": True, "email": "svc@example.com"}

    @pytest.mark.asyncio
    async def test_cookie_wins_over_bearer(self, mw_client: AsyncClient, test_settings) -> None:
        cookie = issue_token(_claims("browser@example.com"), test_settings)
        bearer = issue_token(_claims("svc@example.com"), test_settings)
        response = await mw_client.get(
            "/whoami",
            headers={"Authorization": f"Bearer {bearer}", "Cookie": f"token={cookie}"},
        )
        assert response.json()["email"] == "browser@example.com"

    @pytest.mark.asyncio
    async def test_public_path_is_skipped(self, mw_client: AsyncClient, test_settings) -> None:
        token = issue_token(_claims("svc@example.com"), test_settings)
        response = await mw_client.get("/health/whoami", headers={"Authorization": f"Bearer {token}"})
        assert response.json() == {"authenticated": False}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer garbage"}, {"Authorization": "Basic dXNlcjpwYXNz"}],
        ids=["missing", "invalid", "wrong-scheme"],
    )
    async def test_unauthenticated_requests_pass_through(self, mw_client: AsyncClient, headers) -> None:
        response = await mw_client.get("/whoami", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"authenticated": False}
