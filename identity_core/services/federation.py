"""Federation gateway - OIDC authorization-code login against Entra ID.

Per-login state machine:

    start --authorize()--> redirected --provider redirect--> callback-pending
        --complete_login()--> completed | failed

complete_login() runs its steps strictly in order and stops at the first
failure:
  1. provider error parameter       -> ExternalServiceError
  2. state vs. sso_state cookie     -> CsrfError (token endpoint never called)
  3. code exchange                  -> ExternalServiceError on non-2xx
  4. id_token verification (JWKS)   -> TokenValidationError
  5. Graph profile + groups         -> groups degrade to [] on failure
  6. upsert keyed by external id (oid)
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.auth.oidc import (
    IdentityClaims,
    authority_url,
    extract_identity_claims,
    verify_id_token,
)
from identity_core.config import Settings
from identity_core.core.errors import (
    ConfigurationError,
    ConflictError,
    CsrfError,
    ExternalServiceError,
    ValidationError,
)
from identity_core.core.policy import map_groups_to_role
from identity_core.models.sso_config import SsoConfig
from identity_core.models.user import AuthProvider, User
from identity_core.services.credentials import normalize_email
from identity_core.services.sso_config import get_sso_config

log = structlog.get_logger(__name__)

GRAPH_GROUP_TYPE = "#microsoft.graph.group"


@dataclass
class GraphProfile:
    id: str
    display_name: str | None
    mail: str | None
    job_title: str | None = None
    department: str | None = None
    groups: list[str] = field(default_factory=list)


def _provider_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or response.reason_phrase)
    return response.reason_phrase


def provider_json(response: httpx.Response, context: str) -> dict[str, Any]:
    """Decode a 2xx provider body; anything but a JSON object is a provider fault."""
    try:
        body = response.json()
    except ValueError as exc:
        raise ExternalServiceError(f"{context}: malformed provider response") from exc
    if not isinstance(body, dict):
        raise ExternalServiceError(f"{context}: malformed provider response")
    return body


async def fetch_member_groups(client: httpx.AsyncClient, url: str, access_token: str) -> list[str]:
    """Display names of the security/M365 groups at url.

    Any failure (transport error, non-2xx, malformed body) yields [] so that
    a Graph hiccup never blocks a login or a sync.
    """
    try:
        response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code >= 400:
            log.warning("federation.groups_fetch_failed", status=response.status_code)
            return []
        values = response.json().get("value", [])
    except (httpx.HTTPError, ValueError, AttributeError) as exc:
        log.warning("federation.groups_fetch_failed", error=str(exc))
        return []
    return [
        g["displayName"]
        for g in values
        if g.get("@odata.type") == GRAPH_GROUP_TYPE and g.get("displayName")
    ]


async def find_federated_user(db: AsyncSession, external_id: str) -> User | None:
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def ensure_email_available(db: AsyncSession, email: str, external_id: str) -> None:
    """Reject an email that already belongs to a different account."""
    result = await db.execute(select(User).where(User.email == email))
    holder = result.scalar_one_or_none()
    if holder is not None and holder.external_id != external_id:
        raise ConflictError(
            "Email is already used by another account",
            details={"email": email},
        )


class FederationGateway:
    """Drives the OIDC authorize/callback exchange."""

    def __init__(self, db: AsyncSession, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self.db = db
        self.settings = settings
        self.http = http_client

    async def _enabled_config(self) -> SsoConfig:
        config = await get_sso_config(self.db, self.settings)
        if config is None or not config.enabled:
            raise ConfigurationError("SSO is not configured")
        return config

    # ---------------------------------------------------------------- #
    # Authorize
    # ---------------------------------------------------------------- #

    def build_authorize_url(self, config: SsoConfig, state: str) -> str:
        params = {
            "client_id": config.client_id,
            "response_type": "code",
            "redirect_uri": config.redirect_uri,
            "response_mode": "query",
            "scope": " ".join(config.scopes or []),
            "state": state,
            "prompt": "select_account",
        }
        return f"{authority_url(self.settings, config.tenant_id)}/oauth2/v2.0/authorize?{urlencode(params)}"

    async def authorize(self) -> tuple[str, str]:
        """Return (authorize_url, state). The caller stores state in a cookie."""
        config = await self._enabled_config()
        state = secrets.token_hex(32)
        log.info("federation.authorize_started", directory_tenant=config.tenant_id)
        return self.build_authorize_url(config, state), state

    # ---------------------------------------------------------------- #
    # Callback
    # ---------------------------------------------------------------- #

    @staticmethod
    def check_state(state: str | None, cookie_state: str | None) -> None:
        if not state or not cookie_state or not hmac.compare_digest(state, cookie_state):
            log.warning("federation.state_mismatch", has_state=bool(state), has_cookie=bool(cookie_state))
            raise CsrfError("Invalid SSO state, possible CSRF")

    async def exchange_code(self, config: SsoConfig, code: str) -> dict[str, Any]:
        token_endpoint = f"{authority_url(self.settings, config.tenant_id)}/oauth2/v2.0/token"
        form = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": config.redirect_uri,
            "grant_type": "authorization_code",
            "scope": " ".join(config.scopes or []),
        }
        try:
            response = await self.http.post(token_endpoint, data=form)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Token exchange failed: {exc}") from exc

        if response.status_code >= 400:
            message = _provider_error_message(response)
            log.warning("federation.token_exchange_failed", status=response.status_code)
            raise ExternalServiceError(f"Token exchange failed: {message}")

        tokens = provider_json(response, "Token exchange failed")
        if not tokens.get("id_token") or not tokens.get("access_token"):
            raise ExternalServiceError("Token exchange failed: incomplete token response")
        return tokens

    async def fetch_graph_profile(self, access_token: str) -> GraphProfile:
        base = self.settings.graph_api_base.rstrip("/")
        try:
            response = await self.http.get(
                f"{base}/me?$select=id,displayName,mail,jobTitle,department",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Graph profile fetch failed: {exc}") from exc
        if response.status_code >= 400:
            raise ExternalServiceError(f"Graph profile fetch failed: {_provider_error_message(response)}")

        profile = provider_json(response, "Graph profile fetch failed")
        groups = await fetch_member_groups(self.http, f"{base}/me/memberOf?$select=displayName", access_token)
        return GraphProfile(
            id=profile.get("id", ""),
            display_name=profile.get("displayName"),
            mail=profile.get("mail") or profile.get("userPrincipalName"),
            job_title=profile.get("jobTitle"),
            department=profile.get("department"),
            groups=groups,
        )

    async def upsert_federated_user(
        self,
        claims: IdentityClaims,
        profile: GraphProfile,
        config: SsoConfig,
    ) -> User:
        """Create or refresh the local record keyed by the directory object id.

        A successful federated login always reactivates the account.
        """
        email = normalize_email(profile.mail or claims.email)
        if not email:
            raise ValidationError("Directory account has no email address")
        await ensure_email_available(self.db, email, claims.oid)

        role = map_groups_to_role(profile.groups, config.group_role_map or {}, config.default_role)
        user = await find_federated_user(self.db, claims.oid)
        created = user is None
        if user is None:
            user = User(external_id=claims.oid, email_verified=True, invite_accepted=True)
            self.db.add(user)

        user.email = email
        user.display_name = profile.display_name or claims.name or email
        user.auth_provider = AuthProvider.ENTRA_ID
        user.password_hash = None
        user.role = role
        user.is_active = True
        user.job_title = profile.job_title
        user.department = profile.department
        user.groups = list(profile.groups)
        user.last_login_at = datetime.now(UTC)
        await self.db.flush()

        log.info(
            "federation.user_upserted",
            user_id=str(user.id),
            created=created,
            role=role,
            group_count=len(profile.groups),
        )
        return user

    async def complete_login(
        self,
        *,
        code: str | None,
        state: str | None,
        cookie_state: str | None,
        provider_error: str | None = None,
    ) -> User:
        if provider_error:
            raise ExternalServiceError(f"SSO error: {provider_error}")

        self.check_state(state, cookie_state)

        config = await get_sso_config(self.db, self.settings)
        if config is None:
            raise ConfigurationError("SSO is not configured")
        if not code:
            raise ValidationError("Authorization code is missing")

        tokens = await self.exchange_code(config, code)
        raw_claims = await verify_id_token(
            tokens["id_token"],
            directory_tenant=config.tenant_id,
            client_id=config.client_id,
            settings=self.settings,
            http_client=self.http,
        )
        claims = extract_identity_claims(raw_claims)
        profile = await self.fetch_graph_profile(tokens["access_token"])
        return await self.upsert_federated_user(claims, profile, config)
