"""OIDC id_token verification for Entra ID.

The callback never trusts an id_token until:
- its signature verifies against the directory's published JWKS
- iss matches https://login.microsoftonline.com/{tenant}/v2.0
- aud matches the configured client id
- exp (and iat) are valid

JWKS documents are cached per URI with a TTL (5 minutes) to avoid hammering
the IdP. When a token carries a kid that is not in the cached set the cache
is refreshed once before failing, which covers key rotation.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import jwt
import structlog
from jwt.exceptions import DecodeError, InvalidTokenError, PyJWKError

from identity_core.config import Settings
from identity_core.core.errors import AuthError, ExternalServiceError

log = structlog.get_logger(__name__)

# JWKS cache: uri -> (fetched_at, {kid: jwk})
_jwks_cache: dict[str, tuple[float, dict[str, dict[str, Any]]]] = {}
_JWKS_TTL_SECONDS = 300

_ALLOWED_ALGORITHMS = ["RS256"]


class TokenValidationError(AuthError):
    """Raised when an id_token cannot be validated."""

    code = "id_token_invalid"


@dataclass
class IdentityClaims:
    """Identity attributes taken from a verified id_token."""

    sub: str
    oid: str
    preferred_username: str | None
    name: str | None
    email: str | None
    groups: list[str] = field(default_factory=list)


def authority_url(settings: Settings, directory_tenant: str) -> str:
    return f"{settings.entra_authority_base.rstrip('/')}/{directory_tenant}"


def expected_issuer(settings: Settings, directory_tenant: str) -> str:
    return f"{authority_url(settings, directory_tenant)}/v2.0"


def jwks_uri(settings: Settings, directory_tenant: str) -> str:
    return f"{authority_url(settings, directory_tenant)}/discovery/v2.0/keys"


def clear_jwks_cache() -> None:
    _jwks_cache.clear()


async def _fetch_jwks(uri: str, client: httpx.AsyncClient) -> dict[str, Any]:
    try:
        response = await client.get(uri)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise ExternalServiceError(f"Failed to fetch signing keys: {exc}") from exc
    return response.json()  # type: ignore[no-any-return]


async def _get_jwks(
    uri: str,
    client: httpx.AsyncClient,
    *,
    force_refresh: bool = False,
) -> dict[str, dict[str, Any]]:
    """Return cached keys for uri or fetch a fresh copy."""
    now = time.monotonic()
    cached = _jwks_cache.get(uri)
    if cached and not force_refresh and (now - cached[0]) <= _JWKS_TTL_SECONDS:
        return cached[1]

    raw = await _fetch_jwks(uri, client)
    keys = {key["kid"]: key for key in raw.get("keys", []) if "kid" in key}
    _jwks_cache[uri] = (now, keys)
    log.info("oidc.jwks_refreshed", uri=uri, key_count=len(keys))
    return keys


async def verify_id_token(
    id_token: str,
    *,
    directory_tenant: str,
    client_id: str,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> dict[str, Any]:
    """Validate an id_token and return its claims.

    Raises TokenValidationError if the token is malformed, signed by an
    unknown key, expired, or issued for another audience/issuer.
    """
    try:
        header = jwt.get_unverified_header(id_token)
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Cannot decode id_token header: {exc}") from exc

    kid = header.get("kid")
    if not kid:
        raise TokenValidationError("id_token header has no kid")

    uri = jwks_uri(settings, directory_tenant)
    keys = await _get_jwks(uri, http_client)
    if kid not in keys:
        keys = await _get_jwks(uri, http_client, force_refresh=True)
    if kid not in keys:
        raise TokenValidationError(f"id_token signed with unknown key {kid!r}")

    try:
        signing_key = jwt.PyJWK(keys[kid])
    except PyJWKError as exc:
        raise TokenValidationError(f"Cannot construct JWK: {exc}") from exc

    try:
        claims: dict[str, Any] = jwt.decode(
            id_token,
            signing_key.key,
            algorithms=_ALLOWED_ALGORITHMS,
            audience=client_id,
            issuer=expected_issuer(settings, directory_tenant),
            options={"require": ["exp", "iat", "sub"]},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"id_token validation failed: {exc}") from exc

    return claims


def extract_identity_claims(claims: dict[str, Any]) -> IdentityClaims:
    """Pick the identity attributes the federation flow uses."""
    oid = claims.get("oid")
    if not oid:
        raise TokenValidationError("id_token missing oid claim")
    preferred_username = claims.get("preferred_username") or claims.get("upn")
    return IdentityClaims(
        sub=claims["sub"],
        oid=oid,
        preferred_username=preferred_username,
        name=claims.get("name"),
        email=claims.get("email") or preferred_username,
        groups=list(claims.get("groups") or []),
    )
