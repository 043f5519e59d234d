"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two places an access token may arrive, checked in priority order:
  1. "access_token" cookie -- set by login, refresh and the OAuth callback.
  2. Authorization: Bearer <token> header -- non-browser API clients.

Both converge on a User loaded from the store; a valid signature for a user
that no longer exists or has been deactivated does not authenticate.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_roles(*roles) builds a guard that raises HTTP 403 when the
authenticated principal's role is not in the required set; admin routes use
require_admin = require_roles(Role.PLATFORM_ADMIN).

Layer rule: no imports from api/ or mail/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import Role, User
from auth.session import SessionManager
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE, decode_access_token


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def _extract_access_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:] or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request from its access token.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token = _extract_access_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    user = request.app.state.user_store.get_by_id(payload["sub"])
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def get_refresh_token(request: Request) -> str:
    """Return the refresh cookie value, or raise HTTP 401 if it is absent."""
    token = request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_session", "message": "Refresh token missing."},
        )
    return token


def require_roles(*roles: Role) -> Callable[[Request], User]:
    """Build a dependency that admits only principals holding one of ``roles``.

    The returned callable authenticates first (401), then checks role
    membership (403), before the route handler runs:
        @router.get("/reports")
        async def route(user: User = Depends(require_roles(Role.PLATFORM_ADMIN, Role.SURVEY_MANAGER))): ...
    """
    allowed = frozenset(Role(r) for r in roles)

    def _guard(request: Request) -> User:
        user = get_current_user(request)
        if Role(user.role) not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role for this operation."},
            )
        return user

    _guard.required_roles = allowed  # type: ignore[attr-defined]
    return _guard


require_admin = require_roles(Role.PLATFORM_ADMIN)
