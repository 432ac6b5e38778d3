"""Session token service.

Session tokens are HS256 JWTs signed with settings.jwt_secret and valid for
settings.jwt_expiry_hours (24h). They are handed to the browser as an
http-only, same-site=lax cookie and are also accepted as a Bearer token so
other services can call GET /auth/verify.

Claims:
  - user_id: string UUID of the local user record
  - email: string
  - role: platform role
  - auth_provider: "local" | "entra_id"
  - tenant_id: optional tenant business id
  - iat, exp: standard timestamps
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import structlog
from fastapi import Response
from jwt.exceptions import DecodeError, ExpiredSignatureError
from jwt.exceptions import InvalidTokenError as JWTInvalidTokenError

from identity_core.config import Settings
from identity_core.core.errors import InvalidTokenError
from identity_core.models.user import User

log = structlog.get_logger(__name__)

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("user_id", "email", "role", "auth_provider")


def claims_for_user(user: User, *, tenant_id: str | None = None) -> dict[str, Any]:
    claims: dict[str, Any] = {
        "user_id": str(user.id),
        "email": user.email,
        "role": str(user.role),
        "auth_provider": str(user.auth_provider),
    }
    if tenant_id:
        claims["tenant_id"] = tenant_id
    return claims


def issue_token(claims: dict[str, Any], settings: Settings) -> str:
    """Sign claims into a session token that expires after jwt_expiry_hours."""
    missing = [c for c in _REQUIRED_CLAIMS if not claims.get(c)]
    if missing:
        raise ValueError(f"Cannot issue token without claims: {missing}")

    now = datetime.now(UTC)
    payload = {
        **claims,
        "sub": claims["user_id"],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=settings.jwt_expiry_hours)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret.get_secret_value(), algorithm=_ALGORITHM)


def verify_token(token: str, settings: Settings) -> dict[str, Any]:
    """Verify signature and expiry and return the claims.

    Raises InvalidTokenError on expiry, signature mismatch, malformed input,
    or missing claims.
    """
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=[_ALGORITHM],
            options={"require": ["exp", "iat"]},
        )
    except ExpiredSignatureError as exc:
        raise InvalidTokenError("Session token has expired") from exc
    except (DecodeError, JWTInvalidTokenError) as exc:
        raise InvalidTokenError("Invalid session token") from exc

    missing = [c for c in _REQUIRED_CLAIMS if not claims.get(c)]
    if missing:
        raise InvalidTokenError(f"Session token missing claims: {missing}")
    return claims


# ------------------------------------------------------------------ #
# Cookies
# ------------------------------------------------------------------ #


def set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.jwt_expiry_hours * 3600,
        httponly=True,
        secure=settings.is_prod,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(key=settings.session_cookie_name, path="/")


def set_state_cookie(response: Response, state: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.sso_state_cookie_name,
        value=state,
        max_age=settings.sso_state_ttl_seconds,
        httponly=True,
        secure=settings.is_prod,
        samesite="lax",
        path="/",
    )


def clear_state_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(key=settings.sso_state_cookie_name, path="/")
