"""Domain error taxonomy.

Services raise these instead of HTTPException so that the same code paths
work from routes, background jobs and tests. main.create_app() installs a
handler that renders every IdentityError as:

    {"error": {"code": "quota_exceeded", "message": "...", "details": {...}}}
"""

from __future__ import annotations

from typing import Any

from fastapi import status


class IdentityError(Exception):
    """Base class for all errors surfaced to API clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "identity_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(IdentityError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class AuthError(IdentityError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "auth_error"


class InvalidTokenError(AuthError):
    """Session token is expired, tampered with, or missing claims."""

    code = "invalid_token"


class PermissionDeniedError(IdentityError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "permission_denied"


class NotFoundError(IdentityError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(IdentityError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class CsrfError(IdentityError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "csrf_error"


class ConfigurationError(IdentityError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "configuration_error"


class QuotaExceededError(IdentityError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "quota_exceeded"


class AlreadyProvisionedError(IdentityError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "already_provisioned"


class ExternalServiceError(IdentityError):
    """The identity provider or directory API returned an error."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "external_service_error"


class ProvisioningError(IdentityError):
    """Tenant database provisioning failed; the tenant stays retryable."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "provisioning_error"
