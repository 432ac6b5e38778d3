"""Credential store - user records, passwords, invite and reset tokens.

All lookups of local accounts are by normalized (lowercased, trimmed)
email. Federated accounts are owned by services.federation and
services.directory_sync; this service only reads them and refuses password
operations on them.

Token expiry checks run in SQL (``expires > now``) so they behave the same
on PostgreSQL and SQLite.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.auth.passwords import (
    generate_opaque_token,
    hash_password,
    validate_password_policy,
    verify_password,
)
from identity_core.config import Settings, get_settings
from identity_core.core.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    ValidationError,
)
from identity_core.core.policy import is_valid_role
from identity_core.models.organization import Organization
from identity_core.models.system import BOOTSTRAP_MARKER_ID, BootstrapMarker
from identity_core.models.user import AuthProvider, User, UserRole

log = structlog.get_logger(__name__)

_SORT_COLUMNS = {
    "createdAt": User.created_at,
    "created_at": User.created_at,
    "email": User.email,
    "displayName": User.display_name,
    "display_name": User.display_name,
    "role": User.role,
    "lastLoginAt": User.last_login_at,
    "last_login_at": User.last_login_at,
}

_PROFILE_FIELDS = ("display_name", "avatar_url", "job_title", "department", "phone")
_ADMIN_EDITABLE_FIELDS = ("display_name", "role", "is_active", "job_title", "department", "phone")


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _check_role(role: str) -> UserRole:
    if not is_valid_role(role):
        raise ValidationError(f"Unknown role: {role}", details={"role": role})
    return UserRole(role)


class CredentialStore:
    """User record operations for local accounts and admin user management."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or get_settings()

    # ---------------------------------------------------------------- #
    # Lookups
    # ---------------------------------------------------------------- #

    async def get_by_email(self, email: str) -> User | None:
        result = await self.db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def get_user(self, user_id: uuid.UUID | str) -> User:
        try:
            key = user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))
        except ValueError as exc:
            raise NotFoundError("User not found") from exc
        user = await self.db.get(User, key)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def count_users(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(User))
        return int(result.scalar_one())

    async def count_active_users(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(User).where(User.is_active.is_(True)))
        return int(result.scalar_one())

    async def ensure_user_capacity(self) -> None:
        """Raise QuotaExceededError when the organization's max_users is reached.

        Only active accounts count. Without an organization there is no limit.
        """
        result = await self.db.execute(select(Organization).order_by(Organization.created_at).limit(1))
        org = result.scalar_one_or_none()
        if org is None:
            return
        current = await self.count_active_users()
        if current >= org.max_users:
            raise QuotaExceededError(
                f"User limit reached ({org.max_users}). Upgrade your plan.",
                details={"max_users": org.max_users, "current": current},
            )

    async def claim_setup(self) -> BootstrapMarker:
        """Insert the one-time setup marker.

        Raises:
            ConflictError: users already exist, or another setup holds the marker.
        """
        if await self.count_users() > 0:
            raise ConflictError("already initialized")
        marker = BootstrapMarker(id=BOOTSTRAP_MARKER_ID)
        try:
            async with self.db.begin_nested():
                self.db.add(marker)
        except IntegrityError as exc:
            log.warning("credentials.setup_already_claimed")
            raise ConflictError("already initialized") from exc
        return marker

    # ---------------------------------------------------------------- #
    # Local accounts
    # ---------------------------------------------------------------- #

    async def create_local_user(
        self,
        *,
        email: str,
        password: str,
        display_name: str,
        role: str = UserRole.USER,
        job_title: str | None = None,
        department: str | None = None,
        phone: str | None = None,
    ) -> User:
        """Create an active, verified local account.

        Raises:
            ValidationError: missing fields, weak password or unknown role.
            ConflictError: the email is already registered.
        """
        email = normalize_email(email)
        if not email or not password or not (display_name or "").strip():
            raise ValidationError("Email, password, and display name are required")
        validate_password_policy(password)
        checked_role = _check_role(role)

        if await self.get_by_email(email) is not None:
            raise ConflictError("A user with this email already exists")
        await self.ensure_user_capacity()

        user = User(
            email=email,
            password_hash=hash_password(password, rounds=self.settings.bcrypt_rounds),
            display_name=display_name.strip(),
            role=checked_role,
            auth_provider=AuthProvider.LOCAL,
            is_active=True,
            job_title=job_title,
            department=department,
            phone=phone,
            groups=[],
            email_verified=True,
            invite_accepted=True,
        )
        self.db.add(user)
        await self.db.flush()
        log.info("credentials.user_created", user_id=str(user.id), role=str(checked_role))
        return user

    async def authenticate(self, email: str, password: str) -> User:
        """Verify local credentials and stamp last_login_at.

        Unknown email, federated account and wrong password all produce the
        same AuthError so that callers cannot enumerate accounts.
        """
        if not email or not password:
            raise ValidationError("Email and password are required")

        result = await self.db.execute(
            select(User).where(
                User.email == normalize_email(email),
                User.auth_provider == AuthProvider.LOCAL,
            )
        )
        user = result.scalar_one_or_none()
        if user is None or not verify_password(user.password_hash, password):
            log.info("auth.login_failed", reason="invalid_credentials")
            raise AuthError("Invalid email or password")

        if not user.is_active:
            log.info("auth.login_failed", reason="disabled", user_id=str(user.id))
            raise PermissionDeniedError("Account is disabled")

        user.last_login_at = datetime.now(UTC)
        return user

    async def change_password(self, user: User, current_password: str, new_password: str) -> None:
        if user.is_federated:
            raise ValidationError("Password change is not available for SSO accounts")
        if not verify_password(user.password_hash, current_password):
            raise AuthError("Current password is incorrect")
        validate_password_policy(new_password)
        user.password_hash = hash_password(new_password, rounds=self.settings.bcrypt_rounds)
        log.info("credentials.password_changed", user_id=str(user.id))

    async def update_profile(self, user: User, **fields: Any) -> dict[str, Any]:
        """Apply self-service profile fields; returns the fields that changed."""
        changes: dict[str, Any] = {}
        for name in _PROFILE_FIELDS:
            if name in fields and fields[name] is not None:
                value = fields[name]
                if name == "display_name":
                    value = value.strip()
                    if not value:
                        raise ValidationError("Display name cannot be empty")
                if getattr(user, name) != value:
                    setattr(user, name, value)
                    changes[name] = value
        return changes

    # ---------------------------------------------------------------- #
    # Invites
    # ---------------------------------------------------------------- #

    def invite_url(self, token: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/invite?token={token}"

    def _invite_expiry(self) -> datetime:
        return datetime.now(UTC) + timedelta(days=self.settings.invite_ttl_days)

    async def create_invite(
        self,
        *,
        email: str,
        display_name: str,
        role: str = UserRole.USER,
        job_title: str | None = None,
        department: str | None = None,
    ) -> tuple[User, str]:
        """Create a pending local account and its invite token."""
        email = normalize_email(email)
        if not email or not (display_name or "").strip():
            raise ValidationError("Email and display name are required")
        checked_role = _check_role(role)
        if await self.get_by_email(email) is not None:
            raise ConflictError("A user with this email already exists")
        await self.ensure_user_capacity()

        token = generate_opaque_token()
        user = User(
            email=email,
            display_name=display_name.strip(),
            role=checked_role,
            auth_provider=AuthProvider.LOCAL,
            is_active=True,
            job_title=job_title,
            department=department,
            groups=[],
            invite_token=token,
            invite_expires=self._invite_expiry(),
            invite_accepted=False,
            email_verified=False,
        )
        self.db.add(user)
        await self.db.flush()
        log.info("credentials.invite_created", user_id=str(user.id), invite_url=self.invite_url(token))
        return user, token

    async def resend_invite(self, user_id: uuid.UUID | str) -> tuple[User, str]:
        user = await self.get_user(user_id)
        if user.invite_accepted:
            raise ValidationError("User has already accepted the invitation")
        token = generate_opaque_token()
        user.invite_token = token
        user.invite_expires = self._invite_expiry()
        log.info("credentials.invite_resent", user_id=str(user.id), invite_url=self.invite_url(token))
        return user, token

    async def validate_invite(self, token: str | None) -> User:
        if not token:
            raise ValidationError("Invite token is required")
        result = await self.db.execute(
            select(User).where(
                User.invite_token == token,
                User.invite_accepted.is_(False),
                User.invite_expires > datetime.now(UTC),
            )
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise ValidationError("Invalid or expired invite link")
        return user

    async def accept_invite(
        self,
        token: str | None,
        password: str,
        display_name: str | None = None,
    ) -> User:
        """Set the password on an invited account and consume the token."""
        user = await self.validate_invite(token)
        validate_password_policy(password)

        user.password_hash = hash_password(password, rounds=self.settings.bcrypt_rounds)
        if display_name and display_name.strip():
            user.display_name = display_name.strip()
        user.invite_accepted = True
        user.email_verified = True
        user.invite_token = None
        user.invite_expires = None
        user.last_login_at = datetime.now(UTC)
        log.info("credentials.invite_accepted", user_id=str(user.id))
        return user

    # ---------------------------------------------------------------- #
    # Password reset
    # ---------------------------------------------------------------- #

    async def start_password_reset(self, email: str) -> str | None:
        """Create a reset token for an active local account.

        Returns None (and does nothing) for unknown, disabled or federated
        accounts; the route answers the same way in every case.
        """
        user = await self.get_by_email(email)
        if user is None or not user.is_active or user.is_federated:
            log.info("credentials.reset_skipped")
            return None

        token = generate_opaque_token()
        user.reset_token = token
        user.reset_expires = datetime.now(UTC) + timedelta(minutes=self.settings.reset_ttl_minutes)
        reset_url = f"{self.settings.public_base_url.rstrip('/')}/reset-password?token={token}"
        log.info("credentials.reset_requested", user_id=str(user.id), reset_url=reset_url)
        return token

    async def reset_password(self, token: str | None, new_password: str) -> User:
        if not token:
            raise ValidationError("Reset token is required")
        result = await self.db.execute(
            select(User).where(
                User.reset_token == token,
                User.reset_expires > datetime.now(UTC),
            )
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise ValidationError("Invalid or expired reset link")
        validate_password_policy(new_password)

        user.password_hash = hash_password(new_password, rounds=self.settings.bcrypt_rounds)
        user.reset_token = None
        user.reset_expires = None
        log.info("credentials.password_reset", user_id=str(user.id))
        return user

    # ---------------------------------------------------------------- #
    # Admin user management
    # ---------------------------------------------------------------- #

    async def list_users(
        self,
        *,
        search: str | None = None,
        role: str | None = None,
        status: str | None = None,
        sort: str = "createdAt",
        order: str = "desc",
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[User], int]:
        """Filtered, sorted page of users plus the total match count."""
        filters = []
        if search:
            pattern = f"%{search}%"
            filters.append(
                or_(
                    User.email.ilike(pattern),
                    User.display_name.ilike(pattern),
                    User.job_title.ilike(pattern),
                    User.department.ilike(pattern),
                )
            )
        if role and role != "all":
            filters.append(User.role == role)
        if status == "active":
            filters.append(User.is_active.is_(True))
        elif status == "disabled":
            filters.append(User.is_active.is_(False))
        elif status == "invited":
            filters.append(User.invite_accepted.is_(False))
            filters.append(User.invite_token.is_not(None))

        column = _SORT_COLUMNS.get(sort, User.created_at)
        ordering = column.asc() if order == "asc" else column.desc()

        stmt = (
            select(User)
            .where(*filters)
            .order_by(ordering, User.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        total = (await self.db.execute(select(func.count()).select_from(User).where(*filters))).scalar_one()
        return list(rows), int(total)

    async def update_user(self, user_id: uuid.UUID | str, **fields: Any) -> tuple[User, dict[str, Any]]:
        """Admin update; returns the user and the applied changes."""
        user = await self.get_user(user_id)
        changes: dict[str, Any] = {}
        for name in _ADMIN_EDITABLE_FIELDS:
            if name not in fields or fields[name] is None:
                continue
            value = fields[name]
            if name == "role":
                value = _check_role(value)
            if name == "is_active" and value and not user.is_active:
                await self.ensure_user_capacity()
            setattr(user, name, value)
            changes[name] = value
        return user, changes

    async def deactivate_user(self, user_id: uuid.UUID | str) -> User:
        user = await self.get_user(user_id)
        user.is_active = False
        log.info("credentials.user_deactivated", user_id=str(user.id))
        return user
