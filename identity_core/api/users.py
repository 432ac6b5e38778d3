"""User administration API.

All endpoints require platform_admin or admin.

Routes:
    GET    /api/v1/users                 - List users (search, role/status filters, paging)
    POST   /api/v1/users                 - Create a local user
    POST   /api/v1/users/invite          - Invite a user (link is logged, not mailed)
    POST   /api/v1/users/invite/resend   - Issue a fresh invite token
    GET    /api/v1/users/audit/logs      - Audit trail, newest first
    GET    /api/v1/users/{user_id}       - Get one user
    PATCH  /api/v1/users/{user_id}       - Update profile, role or active flag
    DELETE /api/v1/users/{user_id}       - Deactivate (users are never hard-deleted)
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.api.schemas import ApiModel, paginated
from identity_core.auth.dependencies import AuthenticatedUser, require_admin
from identity_core.config import Settings, get_settings
from identity_core.core.audit import AuditSink, list_entries, performer_from_user
from identity_core.database import get_db_session
from identity_core.models.audit import AuditCategory
from identity_core.models.user import User, UserRole
from identity_core.services.credentials import CredentialStore

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class CreateUserRequest(ApiModel):
    email: str
    password: str
    display_name: str
    role: UserRole = UserRole.USER
    job_title: str | None = None
    department: str | None = None
    phone: str | None = None


class InviteUserRequest(ApiModel):
    email: str
    display_name: str
    role: UserRole = UserRole.USER
    job_title: str | None = None
    department: str | None = None


class ResendInviteRequest(ApiModel):
    user_id: uuid.UUID


class UpdateUserRequest(ApiModel):
    display_name: str | None = Field(None, max_length=255)
    role: UserRole | None = None
    is_active: bool | None = None
    job_title: str | None = None
    department: str | None = None
    phone: str | None = None


def _user_target(user: User) -> dict:
    return {"type": "user", "id": str(user.id), "label": user.email}


# ------------------------------------------------------------------ #
# Collection
# ------------------------------------------------------------------ #


@router.get("")
async def list_users(
    search: str | None = Query(None, max_length=200),
    role: str | None = Query(None),
    user_status: str | None = Query(None, alias="status", pattern="^(all|active|disabled|invited)$"),
    sort: str = Query("createdAt"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100, alias="pageSize"),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    rows, total = await CredentialStore(db, settings).list_users(
        search=search,
        role=role,
        status=user_status,
        sort=sort,
        order=order,
        page=page,
        page_size=page_size,
    )
    return paginated([u.to_public_dict() for u in rows], total, page, page_size)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    body: CreateUserRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = await CredentialStore(db, settings).create_local_user(
        email=body.email,
        password=body.password,
        display_name=body.display_name,
        role=body.role,
        job_title=body.job_title,
        department=body.department,
        phone=body.phone,
    )
    await AuditSink(db).record(
        action="user.created",
        category=AuditCategory.USER,
        performed_by=performer_from_user(current_user.user),
        target=_user_target(user),
        details={"role": str(user.role), "display_name": user.display_name},
        request=request,
    )
    return {"user": user.to_public_dict()}


@router.post("/invite", status_code=status.HTTP_201_CREATED)
async def invite_user(
    body: InviteUserRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    store = CredentialStore(db, settings)
    user, token = await store.create_invite(
        email=body.email,
        display_name=body.display_name,
        role=body.role,
        job_title=body.job_title,
        department=body.department,
    )
    await AuditSink(db).record(
        action="user.invited",
        category=AuditCategory.USER,
        performed_by=performer_from_user(current_user.user),
        target=_user_target(user),
        details={"role": str(user.role), "display_name": user.display_name},
        request=request,
    )
    return {
        "message": f"Invitation created for {user.email}",
        "invite_url": store.invite_url(token),
        "user": user.to_public_dict(),
    }


@router.post("/invite/resend")
async def resend_invite(
    body: ResendInviteRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    store = CredentialStore(db, settings)
    user, token = await store.resend_invite(body.user_id)
    await AuditSink(db).record(
        action="user.invite_resent",
        category=AuditCategory.USER,
        performed_by=performer_from_user(current_user.user),
        target=_user_target(user),
        request=request,
    )
    return {"message": f"Invitation resent to {user.email}", "invite_url": store.invite_url(token)}


# Registered before /{user_id} so "audit" is not parsed as an id.
@router.get("/audit/logs")
async def audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200, alias="pageSize"),
    category: str | None = Query(None),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    rows, total = await list_entries(
        db,
        page=page,
        page_size=page_size,
        category=category,
        retention_days=settings.audit_retention_days,
    )
    return paginated([r.to_dict() for r in rows], total, page, page_size)


# ------------------------------------------------------------------ #
# Item
# ------------------------------------------------------------------ #


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = await CredentialStore(db, settings).get_user(user_id)
    return {"data": user.to_public_dict()}


@router.patch("/{user_id}")
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user, changes = await CredentialStore(db, settings).update_user(
        user_id, **body.model_dump(exclude_unset=True)
    )
    if body.is_active is False:
        action = "user.deactivated"
    elif body.is_active is True:
        action = "user.reactivated"
    else:
        action = "user.updated"

    await AuditSink(db).record(
        action=action,
        category=AuditCategory.USER,
        performed_by=performer_from_user(current_user.user),
        target=_user_target(user),
        details={k: str(v) if isinstance(v, UserRole) else v for k, v in changes.items()},
        request=request,
    )
    return {"user": user.to_public_dict()}


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: str,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = await CredentialStore(db, settings).deactivate_user(user_id)
    await AuditSink(db).record(
        action="user.deactivated",
        category=AuditCategory.USER,
        performed_by=performer_from_user(current_user.user),
        target=_user_target(user),
        request=request,
    )
    return {"message": "User deactivated", "user": user.to_public_dict()}
