"""Session token middleware.

This Starlette middleware runs before any route handler. It:
1. Reads the session token from the `token` cookie, or from an
   `Authorization: Bearer` header for service-to-service callers
2. Verifies it with the token service
3. Injects the validated claims into request.state.auth_claims

Routes that need authentication use the FastAPI dependencies in
dependencies.py (get_current_user, require_role). This middleware
simply makes the raw claims available and never rejects a request itself,
because health probes, setup, login and the SSO endpoints are public.
"""

from __future__ import annotations

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from identity_core.auth.tokens import verify_token
from identity_core.config import Settings, get_settings
from identity_core.core.errors import InvalidTokenError

log = structlog.get_logger(__name__)

# Routes that are always public - skip token extraction entirely
_PUBLIC_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def extract_token(request: Request, cookie_name: str) -> str | None:
    """Cookie first, then Bearer header."""
    token = request.cookies.get(cookie_name)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return None


class AuthMiddleware(BaseHTTPMiddleware):
    """Verify the session token if present and expose its claims.

    On success: request.state.auth_claims is the claims dict.
    On failure or missing token: request.state.auth_claims is None.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.auth_claims = None

        if any(request.url.path.startswith(prefix) for prefix in _PUBLIC_PREFIXES):
            return await call_next(request)

        settings = _settings_for(request)
        token = extract_token(request, settings.session_cookie_name)
        if token is None:
            return await call_next(request)

        try:
            claims = verify_token(token, settings)
            request.state.auth_claims = claims
            log.debug("auth.token_validated", user_id=claims.get("user_id"), role=claims.get("role"))
        except InvalidTokenError as exc:
            log.warning("auth.token_invalid", error=exc.message)

        return await call_next(request)
