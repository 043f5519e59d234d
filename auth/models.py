"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
manager do the work; these classes only own the domain shape.

Layer rule: no imports from api/, mail/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    SURVEY_MANAGER = "SURVEY_MANAGER"
    PARTICIPANT = "PARTICIPANT"


@dataclass
class User:
    """Represents an identity in Survista.

    email is always stored lowercased; the store normalizes on both write and
    lookup, which is what makes it case-insensitively unique.

    hashed_password is None for OAuth-only users (they have no local password
    and can never pass password login).
    """

    email: str
    name: str
    role: Role = Role.SURVEY_MANAGER
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    is_active: bool = True
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """Server-side state for one live session.

    The signed refresh JWT carries the same jti. The record, not the JWT, is
    the source of truth: a refresh is valid only while this row exists, has not
    expired, and belongs to the user named in the token's sub claim.
    """

    jti: str
    user_id: str
    expires_at: datetime
    created_at: str | None = None


@dataclass
class PasswordResetChallenge:
    """One outstanding password reset for a user.

    selector is public and indexed -- it is the lookup key. token_hash is the
    argon2 hash of the secret verifier; the plaintext verifier only ever
    exists in the emailed link.
    """

    user_id: str
    selector: str
    token_hash: str
    expires_at: datetime
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class UserSummary:
    """Minimal identity returned to clients. Never carries the password hash."""

    user_id: str
    email: str
    name: str
    role: Role

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(user_id=user.id or "", email=user.email, name=user.name, role=user.role)


@dataclass(frozen=True)
class TokenPair:
    """A freshly issued access/refresh pair plus the cookie lifetimes for each."""

    access_token: str
    refresh_token: str
    access_max_age: int
    refresh_max_age: int
