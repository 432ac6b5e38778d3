"""Directory reconciler - bulk sync of Entra ID users into the local store.

One run:
  1. Client-credentials token for Microsoft Graph
  2. Page through /users following @odata.nextLink
  3. Skip accounts without an email, external (#EXT#) and guest accounts
  4. Fetch each remaining user's groups with bounded concurrency
  5. Create / update / deactivate local records keyed by external id
  6. Orphan pass: deactivate active federated users the directory no
     longer returns

Per-user failures are collected in SyncResult.errors and never abort the
run. Each user is written inside its own SAVEPOINT so a failed row does not
poison the rest of the batch.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from sqlalchemy import case, func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.auth.oidc import authority_url
from identity_core.config import Settings
from identity_core.core.errors import ConfigurationError, ConflictError, ExternalServiceError
from identity_core.core.policy import map_groups_to_role
from identity_core.models.sso_config import SsoConfig
from identity_core.models.user import AuthProvider, User
from identity_core.services.credentials import normalize_email
from identity_core.services.federation import (
    ensure_email_available,
    fetch_member_groups,
    find_federated_user,
    provider_json,
)

log = structlog.get_logger(__name__)

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
_USER_SELECT = "id,displayName,mail,userPrincipalName,jobTitle,department,accountEnabled,userType"


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncRunLock:
    """Process-wide guard that rejects a second concurrent sync."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        if self._lock.locked():
            raise ConflictError("sync already running")
        async with self._lock:
            yield


def _is_syncable(entry: dict[str, Any]) -> bool:
    upn = entry.get("userPrincipalName") or ""
    if not (entry.get("mail") or upn):
        return False
    if "#EXT#" in upn:
        return False
    return entry.get("userType") != "Guest"


class DirectoryReconciler:
    """Reconciles the directory into local federated user records."""

    def __init__(
        self,
        db: AsyncSession,
        sso_config: SsoConfig,
        http_client: httpx.AsyncClient,
        settings: Settings,
    ) -> None:
        self.db = db
        self.config = sso_config
        self.http = http_client
        self.settings = settings
        self._graph = settings.graph_api_base.rstrip("/")

    # ---------------------------------------------------------------- #
    # Graph access
    # ---------------------------------------------------------------- #

    async def acquire_app_token(self) -> str:
        token_endpoint = f"{authority_url(self.settings, self.config.tenant_id)}/oauth2/v2.0/token"
        form = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "scope": GRAPH_DEFAULT_SCOPE,
            "grant_type": "client_credentials",
        }
        try:
            response = await self.http.post(token_endpoint, data=form)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Failed to get app token: {exc}") from exc
        if response.status_code >= 400:
            try:
                description = response.json().get("error_description", response.reason_phrase)
            except ValueError:
                description = response.reason_phrase
            raise ExternalServiceError(f"Failed to get app token: {description}")
        body = provider_json(response, "Failed to get app token")
        if not body.get("access_token"):
            raise ExternalServiceError("Failed to get app token: no access_token in response")
        return str(body["access_token"])

    async def fetch_directory_users(self, access_token: str) -> list[dict[str, Any]]:
        url: str | None = f"{self._graph}/users?$select={_USER_SELECT}&$top=999"
        users: list[dict[str, Any]] = []
        while url:
            try:
                response = await self.http.get(url, headers={"Authorization": f"Bearer {access_token}"})
            except httpx.HTTPError as exc:
                raise ExternalServiceError(f"Failed to list directory users: {exc}") from exc
            if response.status_code >= 400:
                raise ExternalServiceError(f"Failed to list directory users: {response.reason_phrase}")
            page = provider_json(response, "Failed to list directory users")
            users.extend(page.get("value", []))
            url = page.get("@odata.nextLink")
        log.info("sync.directory_fetched", count=len(users))
        return users

    async def _groups_for(self, entries: list[dict[str, Any]], access_token: str) -> dict[str, list[str]]:
        semaphore = asyncio.Semaphore(self.settings.sync_concurrency)

        async def one(user_id: str) -> tuple[str, list[str]]:
            async with semaphore:
                url = f"{self._graph}/users/{user_id}/memberOf?$select=displayName"
                return user_id, await fetch_member_groups(self.http, url, access_token)

        pairs = await asyncio.gather(*(one(e["id"]) for e in entries))
        return dict(pairs)

    # ---------------------------------------------------------------- #
    # Reconciliation
    # ---------------------------------------------------------------- #

    async def _apply(self, entry: dict[str, Any], groups: list[str], result: SyncResult) -> None:
        external_id = entry["id"]
        email = normalize_email(entry.get("mail") or entry.get("userPrincipalName"))
        enabled = entry.get("accountEnabled", True) is not False
        role = map_groups_to_role(groups, self.config.group_role_map or {}, self.config.default_role)

        user = await find_federated_user(self.db, external_id)
        if user is None and not self.config.auto_provision:
            result.skipped += 1
            return

        await ensure_email_available(self.db, email, external_id)

        if user is None:
            user = User(
                external_id=external_id,
                auth_provider=AuthProvider.ENTRA_ID,
                email_verified=True,
                invite_accepted=True,
            )
            self.db.add(user)
            outcome = "created"
        elif user.is_active and not enabled:
            outcome = "deactivated"
        else:
            outcome = "updated"

        user.email = email
        user.display_name = entry.get("displayName") or email
        user.job_title = entry.get("jobTitle")
        user.department = entry.get("department")
        user.groups = list(groups)
        user.role = role
        user.is_active = enabled
        await self.db.flush()
        setattr(result, outcome, getattr(result, outcome) + 1)

    async def _deactivate_orphans(self, seen_ids: set[str], result: SyncResult) -> None:
        stmt = select(User).where(
            User.auth_provider == AuthProvider.ENTRA_ID,
            User.is_active.is_(True),
            User.external_id.is_not(None),
        )
        for user in (await self.db.execute(stmt)).scalars().all():
            if user.external_id not in seen_ids:
                user.is_active = False
                result.deactivated += 1
                log.info("sync.orphan_deactivated", user_id=str(user.id))
        await self.db.flush()

    async def run(self) -> SyncResult:
        """Run one full reconciliation and record the outcome on the config."""
        if not self.config.tenant_id or not self.config.client_id or not self.config.client_secret:
            raise ConfigurationError("SSO is not configured")

        log.info("sync.started", directory_tenant=self.config.tenant_id)
        access_token = await self.acquire_app_token()
        entries = await self.fetch_directory_users(access_token)

        result = SyncResult(total=len(entries))
        seen_ids = {e["id"] for e in entries if e.get("id")}
        eligible = [e for e in entries if e.get("id") and _is_syncable(e)]
        result.skipped += len(entries) - len(eligible)

        groups_by_id = await self._groups_for(eligible, access_token)

        for entry in eligible:
            try:
                async with self.db.begin_nested():
                    await self._apply(entry, groups_by_id.get(entry["id"], []), result)
            except Exception as exc:
                label = entry.get("userPrincipalName") or entry.get("mail") or entry["id"]
                log.warning("sync.user_failed", user=label, error=str(exc))
                result.errors.append({"user": label, "error": str(exc)})

        await self._deactivate_orphans(seen_ids, result)

        if inspect(self.config).persistent:
            self.config.last_sync_at = datetime.now(UTC)
            self.config.last_sync_result = result.to_dict()
            await self.db.flush()

        log.info(
            "sso.sync_completed",
            created=result.created,
            updated=result.updated,
            deactivated=result.deactivated,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result


async def sync_status(db: AsyncSession, config: SsoConfig | None) -> dict[str, Any]:
    """Federated user counts plus the last recorded sync."""
    counts = (
        await db.execute(
            select(
                func.count(),
                func.coalesce(func.sum(case((User.is_active.is_(True), 1), else_=0)), 0),
            ).where(User.auth_provider == AuthProvider.ENTRA_ID)
        )
    ).one()
    total, active = int(counts[0]), int(counts[1])
    return {
        "configured": config is not None,
        "enabled": bool(config and config.enabled),
        "auto_provision": bool(config and config.auto_provision),
        "users": {"total": total, "active": active, "disabled": total - active},
        "last_sync_at": config.last_sync_at.isoformat() if config and config.last_sync_at else None,
        "last_sync_result": config.last_sync_result if config else None,
    }
