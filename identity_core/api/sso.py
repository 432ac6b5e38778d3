"""Federated login (Microsoft Entra ID) and SSO administration.

Routes:
    GET    /api/v1/auth/sso/status       - Is SSO enabled? (public)
    GET    /api/v1/auth/sso/authorize    - Start OIDC login, sets sso_state cookie
    GET    /api/v1/auth/sso/callback     - Provider redirect target
    POST   /api/v1/auth/sso/sync         - Bulk directory reconciliation (admin)
    GET    /api/v1/auth/sso/sync/status  - Federated user counts + last run (admin)
    GET    /api/v1/auth/sso/config       - Provider config, secret masked (admin)
    PUT    /api/v1/auth/sso/config       - Create/replace provider config (admin)
    DELETE /api/v1/auth/sso/config       - Remove provider config (admin)
"""

from __future__ import annotations

import httpx
import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.api.deps import get_http_client, get_sync_lock
from identity_core.api.schemas import ApiModel
from identity_core.auth.dependencies import AuthenticatedUser, require_admin
from identity_core.auth.tokens import (
    claims_for_user,
    clear_state_cookie,
    issue_token,
    set_session_cookie,
    set_state_cookie,
)
from identity_core.config import Settings, get_settings
from identity_core.core.audit import AuditSink, performer_from_user
from identity_core.core.errors import ConfigurationError, IdentityError
from identity_core.database import get_db_session
from identity_core.models.audit import AuditCategory
from identity_core.services.directory_sync import DirectoryReconciler, SyncRunLock, sync_status
from identity_core.services.federation import FederationGateway
from identity_core.services.sso_config import (
    delete_sso_config,
    get_sso_config,
    get_stored_config,
    sso_status as build_sso_status,
    upsert_sso_config,
)

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth/sso", tags=["sso"])


class SsoConfigRequest(ApiModel):
    tenant_id: str = Field(..., description="Directory (Entra) tenant id")
    client_id: str
    client_secret: str
    redirect_uri: str
    enabled: bool | None = None
    scopes: list[str] | None = None
    group_role_map: dict[str, str] | None = None
    auto_provision: bool | None = None
    default_role: str | None = None


# ------------------------------------------------------------------ #
# Login flow
# ------------------------------------------------------------------ #


@router.get("/status")
async def status(
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    return build_sso_status(await get_sso_config(db, settings))


@router.get("/authorize")
async def authorize(
    response: Response,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> dict:
    url, state = await FederationGateway(db, settings, http_client).authorize()
    set_state_cookie(response, state, settings)
    return {"authorize_url": url}


def _failed_callback(status_code: int, content: dict, settings: Settings) -> JSONResponse:
    failed = JSONResponse(status_code=status_code, content=content)
    clear_state_cookie(failed, settings)
    return failed


@router.get("/callback", response_model=None)
async def callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> Response:
    """Complete the login. The state cookie is cleared on every outcome."""
    gateway = FederationGateway(db, settings, http_client)
    try:
        user = await gateway.complete_login(
            code=code,
            state=state,
            cookie_state=request.cookies.get(settings.sso_state_cookie_name),
            provider_error=error_description or error,
        )
    except IdentityError as exc:
        log.warning("auth.sso_login_failed", code=exc.code, error=exc.message)
        await db.rollback()
        return _failed_callback(exc.status_code, exc.to_dict(), settings)
    except Exception as exc:
        log.error("auth.sso_login_error", error=str(exc), exc_info=True)
        await db.rollback()
        return _failed_callback(
            500, {"error": {"code": "internal_error", "message": "Internal server error"}}, settings
        )

    await AuditSink(db).record(
        action="auth.sso_login",
        category=AuditCategory.AUTH,
        performed_by=performer_from_user(user),
        target={"type": "user", "id": str(user.id), "label": user.email},
        details={"groups": list(user.groups or []), "role": str(user.role)},
        request=request,
    )

    redirect = RedirectResponse(url=settings.post_login_redirect, status_code=302)
    clear_state_cookie(redirect, settings)
    set_session_cookie(redirect, issue_token(claims_for_user(user), settings), settings)
    log.info("auth.login_succeeded", user_id=str(user.id), auth_provider="entra_id")
    return redirect


# ------------------------------------------------------------------ #
# Directory sync (admin)
# ------------------------------------------------------------------ #


@router.post("/sync")
async def run_sync(
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    lock: SyncRunLock = Depends(get_sync_lock),
) -> dict:
    config = await get_sso_config(db, settings)
    if config is None:
        raise ConfigurationError("SSO is not configured")

    async with lock.hold():
        result = await DirectoryReconciler(db, config, http_client, settings).run()

    await AuditSink(db).record(
        action="sso.sync",
        category=AuditCategory.SSO,
        performed_by=performer_from_user(current_user.user),
        target={"type": "sso", "id": config.provider, "label": "Microsoft Entra ID"},
        details=result.to_dict(),
        request=request,
    )
    return {"message": "Sync completed", "result": result.to_dict()}


@router.get("/sync/status")
async def get_sync_status(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    lock: SyncRunLock = Depends(get_sync_lock),
) -> dict:
    data = await sync_status(db, await get_sso_config(db, settings))
    data["running"] = lock.running
    return data


# ------------------------------------------------------------------ #
# Provider configuration (admin)
# ------------------------------------------------------------------ #


@router.get("/config")
async def get_config(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    config = await get_stored_config(db)
    if config is None:
        return {"configured": False}
    return {"configured": True, "config": config.to_safe_dict()}


@router.put("/config")
async def put_config(
    body: SsoConfigRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    config = await upsert_sso_config(db, **body.model_dump())
    await AuditSink(db).record(
        action="sso.config_updated",
        category=AuditCategory.SSO,
        performed_by=performer_from_user(current_user.user),
        target={"type": "sso", "id": config.provider, "label": "Microsoft Entra ID"},
        details={"enabled": config.enabled, "auto_provision": config.auto_provision},
        request=request,
    )
    return {"message": "SSO configuration saved", "config": config.to_safe_dict()}


@router.delete("/config")
async def remove_config(
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    removed = await delete_sso_config(db)
    if removed:
        await AuditSink(db).record(
            action="sso.config_deleted",
            category=AuditCategory.SSO,
            performed_by=performer_from_user(current_user.user),
            target={"type": "sso", "id": "entra_id", "label": "Microsoft Entra ID"},
            request=request,
        )
    return {"message": "SSO configuration removed"}
