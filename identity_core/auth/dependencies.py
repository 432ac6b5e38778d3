"""FastAPI dependencies for authentication and authorization.

These dependencies are injected into route handlers via Depends().

Key dependencies:
- get_current_user: Resolve session claims -> User ORM object
- require_role: Assert user has one of the allowed roles
- require_admin: platform_admin or admin

Unlike the federated login flow, nothing here creates users: a valid token
for a user id that no longer exists is treated as unauthenticated.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.auth.middleware import extract_token
from identity_core.auth.tokens import verify_token
from identity_core.config import Settings, get_settings
from identity_core.core.errors import AuthError, PermissionDeniedError
from identity_core.core.policy import ADMIN_ROLES
from identity_core.database import get_db_session
from identity_core.models.user import User, UserRole
from identity_core.telemetry import bind_user_context

log = structlog.get_logger(__name__)


class AuthenticatedUser:
    """Lightweight container passed to route handlers.

    Combines the ORM User object with the verified token claims so that
    routes can read both without extra queries.
    """

    def __init__(self, user: User, claims: dict[str, Any]) -> None:
        self.user = user
        self.claims = claims

    @property
    def id(self) -> uuid.UUID:
        return self.user.id

    @property
    def role(self) -> UserRole:
        return self.user.role

    @property
    def email(self) -> str:
        return self.user.email

    @property
    def tenant_id(self) -> str | None:
        return self.claims.get("tenant_id")


def _claims_from_request(request: Request, settings: Settings) -> dict[str, Any]:
    claims = getattr(request.state, "auth_claims", None)
    if claims is not None:
        return claims  # type: ignore[no-any-return]

    # Routes mounted without AuthMiddleware
    token = extract_token(request, settings.session_cookie_name)
    if token is None:
        raise AuthError("Not authenticated")
    return verify_token(token, settings)


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    """Load the user named by the session token.

    Raises AuthError when there is no valid session or the user is gone,
    PermissionDeniedError when the account is deactivated.
    """
    claims = _claims_from_request(request, settings)

    try:
        user_id = uuid.UUID(str(claims["user_id"]))
    except (KeyError, ValueError) as exc:
        raise AuthError("Invalid session") from exc

    user = await db.get(User, user_id)
    if user is None:
        log.warning("auth.unknown_user", user_id=str(user_id))
        raise AuthError("User not found")

    if not user.is_active:
        raise PermissionDeniedError("Account is disabled")

    bind_user_context(str(user.id), role=str(user.role))
    return AuthenticatedUser(user=user, claims=claims)


def require_role(*allowed_roles: UserRole) -> Callable:
    """Dependency factory that asserts the current user has one of the allowed roles.

    Usage:
        @router.put("/permissions/{applet_id}/override")
        async def put_override(
            current_user: AuthenticatedUser = Depends(require_role(UserRole.PLATFORM_ADMIN))
        ):
            ...
    """

    async def _check_role(
        current_user: AuthenticatedUser = Depends(get_current_user),
    ) -> AuthenticatedUser:
        if current_user.role not in allowed_roles:
            log.info(
                "auth.role_denied",
                user_id=str(current_user.id),
                role=str(current_user.role),
            )
            raise PermissionDeniedError("Insufficient permissions for this action")
        return current_user

    return _check_role


require_admin = require_role(*ADMIN_ROLES)
require_platform_admin = require_role(UserRole.PLATFORM_ADMIN)
