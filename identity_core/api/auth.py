"""Local authentication endpoints.

Routes:
    POST  /api/v1/auth/setup             - First-run platform_admin bootstrap
    POST  /api/v1/auth/login             - Email + password
    POST  /api/v1/auth/logout            - Clear the session cookie
    GET   /api/v1/auth/me                - Current user
    GET   /api/v1/auth/verify            - Token verification for other services
    PATCH /api/v1/auth/profile           - Update own profile
    POST  /api/v1/auth/forgot-password   - Start a reset (generic answer)
    POST  /api/v1/auth/reset-password    - Consume a reset token
    POST  /api/v1/auth/change-password   - Rotate own password
    GET   /api/v1/auth/invite/validate   - Check an invite token
    POST  /api/v1/auth/invite/accept     - Activate an invited account

Federated login lives in api/sso.py.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.api.schemas import ApiModel
from identity_core.auth.dependencies import AuthenticatedUser, get_current_user
from identity_core.auth.middleware import extract_token
from identity_core.auth.tokens import (
    claims_for_user,
    clear_session_cookie,
    issue_token,
    set_session_cookie,
    verify_token,
)
from identity_core.config import Settings, get_settings
from identity_core.core.audit import AuditSink, performer_from_user
from identity_core.core.errors import InvalidTokenError
from identity_core.database import get_db_session
from identity_core.models.audit import AuditCategory
from identity_core.models.user import User, UserRole
from identity_core.services.credentials import CredentialStore
from identity_core.services.organization import upsert_organization

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_GENERIC_RESET_MESSAGE = "If an account exists for that email, a reset link has been sent"


# ------------------------------------------------------------------ #
# Request schemas
# ------------------------------------------------------------------ #


class SetupRequest(ApiModel):
    email: str
    password: str
    display_name: str
    organization_name: str | None = None


class LoginRequest(ApiModel):
    email: str
    password: str


class ProfileUpdateRequest(ApiModel):
    display_name: str | None = Field(None, max_length=255)
    avatar_url: str | None = None
    job_title: str | None = None
    department: str | None = None
    phone: str | None = None


class ForgotPasswordRequest(ApiModel):
    email: str


class ResetPasswordRequest(ApiModel):
    token: str
    password: str


class ChangePasswordRequest(ApiModel):
    current_password: str
    new_password: str


class AcceptInviteRequest(ApiModel):
    token: str
    password: str
    display_name: str | None = None


def _start_session(response: Response, user: User, settings: Settings) -> None:
    token = issue_token(claims_for_user(user), settings)
    set_session_cookie(response, token, settings)


# ------------------------------------------------------------------ #
# Session lifecycle
# ------------------------------------------------------------------ #


@router.post("/setup", status_code=status.HTTP_201_CREATED)
async def setup(
    body: SetupRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Create the first platform_admin. Only allowed while there are no users.

    The setup marker is claimed before the account is created, so of two
    concurrent calls only one can commit.
    """
    store = CredentialStore(db, settings)
    marker = await store.claim_setup()

    admin = await store.create_local_user(
        email=body.email,
        password=body.password,
        display_name=body.display_name,
        role=UserRole.PLATFORM_ADMIN,
    )
    marker.initialized_by = admin.id
    admin.last_login_at = datetime.now(UTC)
    if body.organization_name and body.organization_name.strip():
        await upsert_organization(db, name=body.organization_name, created_by=admin.id)

    await AuditSink(db).record(
        action="system.initialized",
        category=AuditCategory.SYSTEM,
        performed_by=performer_from_user(admin),
        target={"type": "user", "id": str(admin.id), "label": admin.email},
        details={"organization_name": body.organization_name},
        request=request,
    )
    _start_session(response, admin, settings)
    log.info("auth.setup_completed", user_id=str(admin.id))
    return {"message": "Admin account created", "user": admin.to_public_dict()}


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = await CredentialStore(db, settings).authenticate(body.email, body.password)
    await AuditSink(db).record(
        action="auth.login",
        category=AuditCategory.AUTH,
        performed_by=performer_from_user(user),
        target={"type": "user", "id": str(user.id), "label": user.email},
        details={"auth_provider": "local"},
        request=request,
    )
    _start_session(response, user, settings)
    log.info("auth.login_succeeded", user_id=str(user.id), auth_provider="local")
    return {"user": user.to_public_dict()}


@router.post("/logout")
async def logout(response: Response, settings: Settings = Depends(get_settings)) -> dict:
    clear_session_cookie(response, settings)
    return {"message": "Logged out successfully"}


@router.get("/me")
async def me(current_user: AuthenticatedUser = Depends(get_current_user)) -> dict:
    return {"user": current_user.user.to_public_dict()}


@router.get("/verify", response_model=None)
async def verify(request: Request, settings: Settings = Depends(get_settings)) -> dict | JSONResponse:
    """Token verification contract used by the gateway and applets."""
    token = extract_token(request, settings.session_cookie_name)
    if token is None:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"valid": False})
    try:
        claims = verify_token(token, settings)
    except InvalidTokenError:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"valid": False})
    return {"valid": True, "payload": claims}


# ------------------------------------------------------------------ #
# Profile & passwords
# ------------------------------------------------------------------ #


@router.patch("/profile")
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    changes = await CredentialStore(db, settings).update_profile(
        current_user.user, **body.model_dump(exclude_unset=True)
    )
    if changes:
        await AuditSink(db).record(
            action="user.profile_updated",
            category=AuditCategory.USER,
            performed_by=performer_from_user(current_user.user),
            target={"type": "user", "id": str(current_user.id), "label": current_user.email},
            details=changes,
            request=request,
        )
    return {"user": current_user.user.to_public_dict()}


@router.post("/forgot-password")
async def forgot_password(
    body: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    await CredentialStore(db, settings).start_password_reset(body.email)
    return {"message": _GENERIC_RESET_MESSAGE}


@router.post("/reset-password")
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = await CredentialStore(db, settings).reset_password(body.token, body.password)
    await AuditSink(db).record(
        action="auth.password_reset",
        category=AuditCategory.AUTH,
        performed_by=performer_from_user(user),
        target={"type": "user", "id": str(user.id), "label": user.email},
        request=request,
    )
    return {"message": "Password has been reset"}


@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    await CredentialStore(db, settings).change_password(
        current_user.user, body.current_password, body.new_password
    )
    await AuditSink(db).record(
        action="auth.password_changed",
        category=AuditCategory.AUTH,
        performed_by=performer_from_user(current_user.user),
        target={"type": "user", "id": str(current_user.id), "label": current_user.email},
        request=request,
    )
    return {"message": "Password changed"}


# ------------------------------------------------------------------ #
# Invites
# ------------------------------------------------------------------ #


@router.get("/invite/validate")
async def validate_invite(
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = await CredentialStore(db, settings).validate_invite(token)
    return {"valid": True, "email": user.email, "display_name": user.display_name}


@router.post("/invite/accept")
async def accept_invite(
    body: AcceptInviteRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = await CredentialStore(db, settings).accept_invite(body.token, body.password, body.display_name)
    await AuditSink(db).record(
        action="user.invite_accepted",
        category=AuditCategory.USER,
        performed_by=performer_from_user(user),
        target={"type": "user", "id": str(user.id), "label": user.email},
        request=request,
    )
    _start_session(response, user, settings)
    return {"message": "Invitation accepted", "user": user.to_public_dict()}
