"""
Shared test fixtures for pytest.

Provides:
- test_settings: Test environment configuration (SQLite, fast bcrypt)
- engine / db_session: In-memory SQLite control plane with all tables
- test_app / client: FastAPI app and an httpx client over ASGITransport
- idp: Fake Entra ID + Microsoft Graph served through httpx.MockTransport
- make_user / auth_headers: Helpers to create users and session tokens
- organization / sso_config: Seeded control-plane rows

The app and the test share one AsyncSession. Requests run one at a time, so
a test can seed rows, call the API and then inspect the same identity map.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import identity_core.models  # noqa: F401 - registers all models with Base.metadata
from identity_core.auth.oidc import clear_jwks_cache
from identity_core.auth.passwords import hash_password
from identity_core.auth.tokens import claims_for_user, issue_token
from identity_core.config import Environment, Settings, get_settings
from identity_core.database import Base, get_db_session
from identity_core.db.pool import enable_sqlite_savepoints
from identity_core.models.organization import Organization
from identity_core.models.sso_config import SsoConfig
from identity_core.models.user import AuthProvider, User, UserRole
from identity_core.services.organization import upsert_organization

DIRECTORY_TENANT = "contoso-directory"
CLIENT_ID = "client-123"
CLIENT_SECRET = "s3cret-value"
STRONG_PASSWORD = "CorrectHorse42battery"


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_jwks():
    clear_jwks_cache()
    yield
    clear_jwks_cache()


# ------------------------------------------------------------------ #
# Settings & database
# ------------------------------------------------------------------ #


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        database_url="sqlite+aiosqlite://",
        tenant_database_url_template=f"sqlite+aiosqlite:///{tmp_path}/{{db_name}}.db",
        jwt_secret="test-jwt-secret-for-the-identity-core-suite",
        bcrypt_rounds=4,
        public_base_url="http://app.test",
        post_login_redirect="/dashboard",
        entra_enabled=False,
        db_echo_sql=False,
    )


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


# ------------------------------------------------------------------ #
# Fake identity provider
# ------------------------------------------------------------------ #


class FakeIdentityProvider:
    """Entra ID token/JWKS endpoints and the Graph API, in memory.

    Every request is appended to .calls so tests can assert what was (or
    was not) contacted.
    """

    graph_base = "https://graph.microsoft.com/v1.0"

    def __init__(self) -> None:
        self.kid = "test-key-1"
        self._private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        public_jwk = RSAAlgorithm.to_jwk(self._private_key.public_key(), as_dict=True)
        self.jwks = {"keys": [{**public_jwk, "kid": self.kid, "use": "sig", "alg": "RS256"}]}

        self.calls: list[httpx.Request] = []
        self.token_error: dict[str, Any] | None = None
        self.token_response: httpx.Response | None = None
        self.users_response: httpx.Response | None = None
        self.login_claims: dict[str, Any] = {}
        self.profile: dict[str, Any] = {}
        self.my_groups: list[str] = []
        self.directory_users: list[dict[str, Any]] = []
        self.user_groups: dict[str, list[str]] = {}
        self.groups_failing_for: set[str] = set()
        self.page_size = 999

    # -- helpers ---------------------------------------------------- #

    def sign(self, claims: dict[str, Any], kid: str | None = None) -> str:
        return jwt.encode(claims, self._private_key, algorithm="RS256", headers={"kid": kid or self.kid})

    def id_token_claims(self, **overrides: Any) -> dict[str, Any]:
        now = int(time.time())
        claims = {
            "iss": f"https://login.microsoftonline.com/{DIRECTORY_TENANT}/v2.0",
            "aud": CLIENT_ID,
            "sub": "subject-1",
            "oid": "oid-alice",
            "preferred_username": "alice@contoso.com",
            "name": "Alice Example",
            "email": "alice@contoso.com",
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        return claims

    def set_login_user(self, **overrides: Any) -> None:
        self.login_claims = self.id_token_claims(**overrides)
        self.profile = {
            "id": self.login_claims["oid"],
            "displayName": self.login_claims.get("name"),
            "mail": self.login_claims.get("email"),
            "jobTitle": "Engineer",
            "department": "R&D",
        }

    def calls_to(self, path_fragment: str) -> list[httpx.Request]:
        return [c for c in self.calls if path_fragment in c.url.path]

    @staticmethod
    def _groups_body(names: list[str]) -> dict[str, Any]:
        return {
            "value": [{"@odata.type": "#microsoft.graph.group", "displayName": n} for n in names]
            + [{"@odata.type": "#microsoft.graph.directoryRole", "displayName": "Directory Readers"}]
        }

    # -- transport -------------------------------------------------- #

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path

        if request.url.host == "login.microsoftonline.com":
            if path.endswith("/discovery/v2.0/keys"):
                return httpx.Response(200, json=self.jwks)
            if path.endswith("/oauth2/v2.0/token"):
                form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
                if self.token_response is not None:
                    return self.token_response
                if self.token_error is not None:
                    return httpx.Response(400, json=self.token_error)
                if form.get("grant_type") == "client_credentials":
                    return httpx.Response(200, json={"access_token": "app-token", "expires_in": 3600})
                return httpx.Response(
                    200,
                    json={"id_token": self.sign(self.login_claims), "access_token": "user-token"},
                )

        if request.url.host == "graph.microsoft.com":
            if path == "/v1.0/me":
                return httpx.Response(200, json=self.profile)
            if path == "/v1.0/me/memberOf":
                return httpx.Response(200, json=self._groups_body(self.my_groups))
            if path == "/v1.0/users":
                if self.users_response is not None:
                    return self.users_response
                skip = int(request.url.params.get("$skiptoken", "0"))
                page = self.directory_users[skip : skip + self.page_size]
                body: dict[str, Any] = {"value": page}
                if skip + self.page_size < len(self.directory_users):
                    body["@odata.nextLink"] = f"{self.graph_base}/users?$skiptoken={skip + self.page_size}"
                return httpx.Response(200, json=body)
            if path.startswith("/v1.0/users/") and path.endswith("/memberOf"):
                user_id = path.split("/")[3]
                if user_id in self.groups_failing_for:
                    return httpx.Response(503, json={"error": {"code": "serviceUnavailable"}})
                return httpx.Response(200, json=self._groups_body(self.user_groups.get(user_id, [])))

        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
async def provider_client(idp: FakeIdentityProvider) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(idp.handler)) as client:
        yield client


# ------------------------------------------------------------------ #
# App & HTTP client
# ------------------------------------------------------------------ #


@pytest.fixture
async def test_app(
    test_settings: Settings,
    db_session: AsyncSession,
    provider_client: httpx.AsyncClient,
) -> AsyncGenerator[FastAPI, None]:
    """Create FastAPI test app instance with test settings.

    get_db_session is overridden to hand out the shared test session with
    the same commit/rollback contract as the real dependency.
    """
    from identity_core.main import create_app

    app = create_app(test_settings)

    async def _test_db_session() -> AsyncGenerator[AsyncSession, None]:
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db_session] = _test_db_session
    app.state.http_client = provider_client
    yield app
    await app.state.tenant_connections.dispose_all()


@pytest.fixture
async def client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client for testing the FastAPI application.

    Uses httpx.AsyncClient with ASGITransport to test the app without
    spinning up a real HTTP server.
    """
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


# ------------------------------------------------------------------ #
# Users & tokens
# ------------------------------------------------------------------ #


@pytest.fixture
def make_user(db_session: AsyncSession, test_settings: Settings) -> Callable[..., Awaitable[User]]:
    """Insert a user directly. Local users get STRONG_PASSWORD."""

    async def _make_user(
        email: str | None = None,
        role: UserRole = UserRole.USER,
        *,
        is_active: bool = True,
        federated: bool = False,
        external_id: str | None = None,
        display_name: str | None = None,
    ) -> User:
        email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
        user = User(
            email=email,
            display_name=display_name or email.split("@")[0],
            role=role,
            is_active=is_active,
            auth_provider=AuthProvider.ENTRA_ID if federated else AuthProvider.LOCAL,
            password_hash=None if federated else hash_password(STRONG_PASSWORD, test_settings.bcrypt_rounds),
            external_id=external_id,
            groups=[],
            email_verified=True,
            invite_accepted=True,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def auth_headers(test_settings: Settings) -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {issue_token(claims_for_user(user), test_settings)}"}

    return _headers


@pytest.fixture
async def platform_admin(make_user) -> User:
    return await make_user("root@example.com", UserRole.PLATFORM_ADMIN)


@pytest.fixture
async def admin_client(
    client: httpx.AsyncClient,
    platform_admin: User,
    auth_headers,
) -> httpx.AsyncClient:
    """The shared client with a platform_admin Bearer token attached."""
    client.headers.update(auth_headers(platform_admin))
    return client


# ------------------------------------------------------------------ #
# Seeded control-plane rows
# ------------------------------------------------------------------ #


@pytest.fixture
async def organization(db_session: AsyncSession) -> Organization:
    org, _ = await upsert_organization(
        db_session,
        name="Contoso Ltd",
        domain="contoso.com",
        subscription={"max_tenants": 2},
    )
    await db_session.commit()
    return org


@pytest.fixture
async def sso_config(db_session: AsyncSession) -> SsoConfig:
    config = SsoConfig(
        provider="entra_id",
        enabled=True,
        tenant_id=DIRECTORY_TENANT,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri="http://testserver/api/v1/auth/sso/callback",
        scopes=["openid", "profile", "email"],
        group_role_map={"Platform Admins": "platform_admin", "IT Ops": "it_operations"},
        auto_provision=True,
        default_role="user",
    )
    db_session.add(config)
    await db_session.commit()
    return config
