"""Password hashing and policy.

Hashes are bcrypt (cost from settings.bcrypt_rounds, 12 by default).
bcrypt.checkpw compares in constant time.

Policy: at least 12 characters with an uppercase letter, a lowercase letter
and a digit.
"""

from __future__ import annotations

import re
import secrets

import bcrypt

from identity_core.core.errors import ValidationError

MIN_PASSWORD_LENGTH = 12

# bcrypt only looks at the first 72 bytes
_BCRYPT_MAX_BYTES = 72

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")


def validate_password_policy(password: str | None) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not (_UPPER.search(password) and _LOWER.search(password) and _DIGIT.search(password)):
        raise ValidationError("Password must contain uppercase, lowercase, and a number")


def hash_password(password: str, rounds: int = 12) -> str:
    encoded = password.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password_hash: str | None, candidate: str | None) -> bool:
    """Constant-time check of candidate against a stored bcrypt hash."""
    if not password_hash or not candidate:
        return False
    try:
        return bcrypt.checkpw(
            candidate.encode("utf-8")[:_BCRYPT_MAX_BYTES],
            password_hash.encode("ascii"),
        )
    except ValueError:
        # Malformed stored hash
        return False


def generate_opaque_token() -> str:
    """32 random bytes, hex encoded. Used for invite and reset links."""
    return secrets.token_hex(32)
