"""
API request and response models for the Survista auth service.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Malformed input (bad email, short password, unknown role) is rejected here,
before anything reaches the session manager.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Role, User, UserSummary

PASSWORD_MIN_LENGTH = 8


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=256)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/auth/reset-password.

    selector and token are the two halves of the emailed reset link.
    """

    selector: str = Field(min_length=1, max_length=128)
    token: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=256)


class UpdateMyDetailsRequest(BaseModel):
    """Request body for PATCH /api/auth/me. All fields optional; none may be blank."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserSummaryResponse(BaseModel):
    """Minimal identity returned by register, login, refresh and /me. Never the hash."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    name: str
    role: Role

    @classmethod
    def from_summary(cls, summary: UserSummary) -> "UserSummaryResponse":
        return cls(user_id=summary.user_id, email=summary.email, name=summary.name, role=summary.role)

    @classmethod
    def from_user(cls, user: User) -> "UserSummaryResponse":
        return cls.from_summary(UserSummary.from_user(user))


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Admin user management
# ---------------------------------------------------------------------------


class AdminUserCreate(BaseModel):
    """Request body for POST /api/users (admin only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=256)
    role: Role
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)


class AdminUserPatch(BaseModel):
    """Request body for PATCH /api/users/{id}. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class AdminUserResponse(BaseModel):
    """Full admin view of an account. Excludes the password hash."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role
    is_active: bool
    has_password: bool
    last_login: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "AdminUserResponse":
        return cls(
            user_id=user.id,
            email=user.email,
            name=user.name,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_active=user.is_active,
            has_password=user.hashed_password is not None,
            last_login=user.last_login,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health. status is "healthy" only when every component is "ok"."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]
