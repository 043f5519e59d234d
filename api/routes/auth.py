"""
api/routes/auth.py -- Authentication and session REST endpoints.

Routes (mounted under /api):
  POST  /auth/register         -- create a local-password account
  POST  /auth/login            -- password login; sets access + refresh cookies
  GET   /auth/me               -- current user summary
  PATCH /auth/me               -- update own name fields
  POST  /auth/refresh          -- rotate the refresh token; sets new cookies
  POST  /auth/logout           -- revoke every session; clears cookies
  GET   /auth/google           -- start the Google OAuth flow
  GET   /auth/google/callback  -- finish it; cookies + redirect to the frontend
  POST  /auth/forgot-password  -- start a password reset (always 200)
  POST  /auth/reset-password   -- complete a password reset

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  SessionManager.authenticate() provides timing equalization -- never inline
  get_by_email() + verify_password() here.
  Cache-Control: no-store on every response that carries or clears tokens.
  OAuth failures never surface provider detail to the browser; they redirect
  to the frontend login page with a fixed error code.

AuthError subclasses raised by the session manager propagate to the handler
in api/main.py, which renders the standard error envelope.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateMyDetailsRequest,
    UserSummaryResponse,
)
from auth.dependencies import get_current_user, get_refresh_token, get_session_manager
from auth.errors import AuthError
from auth.models import TokenPair, User
from auth.oauth import PROVIDER, get_google_user_info
from auth.session import SessionManager
from auth.tokens import clear_auth_cookies, set_auth_cookies
from core.config import get_settings

logger = logging.getLogger("survista.api.auth")

_settings = get_settings()

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent."

# Auth policy:
# - POST  /auth/register, /auth/login, /auth/forgot-password, /auth/reset-password: public
# - GET   /auth/google, /auth/google/callback: public (state checked by authlib)
# - POST  /auth/refresh: refresh cookie only (get_refresh_token)
# - GET/PATCH /auth/me, POST /auth/logout: access token (get_current_user)
router = APIRouter()


def _token_response(tokens: TokenPair, body: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=body)
    set_auth_cookies(resp, tokens.access_token, tokens.refresh_token, tokens.access_max_age, tokens.refresh_max_age)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _login_redirect(error: str) -> RedirectResponse:
    frontend = _settings.frontend_url.rstrip("/")
    return RedirectResponse(f"{frontend}/auth/login?error={error}", status_code=302)


# ---------------------------------------------------------------------------
# Registration and password login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserSummaryResponse, status_code=201)
def register(
    body: RegisterRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> UserSummaryResponse:
    """Register a new SURVEY_MANAGER account. Does not log the user in."""
    user = manager.register(
        email=body.email,
        name=body.name,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return UserSummaryResponse.from_user(user)


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=UserSummaryResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set both auth cookies.

    Unknown email, OAuth-only account and wrong password all produce the same
    401 bad_credentials.
    """
    manager: SessionManager = request.app.state.session_manager
    tokens, summary = manager.login(body.email, body.password)
    return _token_response(tokens, UserSummaryResponse.from_summary(summary).model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserSummaryResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserSummaryResponse:
    """Return identity information for the currently authenticated user."""
    return UserSummaryResponse.from_user(current_user)


@router.patch("/auth/me", response_model=UserSummaryResponse)
def update_me(
    request: Request,
    body: UpdateMyDetailsRequest,
    current_user: User = Depends(get_current_user),
) -> UserSummaryResponse:
    """Update the caller's own display name fields. Role and status are admin-only."""
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        return UserSummaryResponse.from_user(current_user)
    user_store = request.app.state.user_store
    user_store.update_user(current_user.id, **updates)
    return UserSummaryResponse.from_user(user_store.get_by_id(current_user.id))


# ---------------------------------------------------------------------------
# Session rotation and logout
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=UserSummaryResponse)
def refresh(
    refresh_token: str = Depends(get_refresh_token),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Rotate the refresh token. The presented token is dead after this call."""
    tokens, summary = manager.refresh(refresh_token)
    return _token_response(tokens, UserSummaryResponse.from_summary(summary).model_dump(mode="json"))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    current_user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Revoke every refresh session for the user and clear both cookies.

    SessionManager.logout() never raises, so the cookies are always cleared.
    """
    manager.logout(current_user.id)
    resp = JSONResponse(content=MessageResponse(message="Logout successful").model_dump())
    clear_auth_cookies(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/google")
async def google_login(request: Request) -> RedirectResponse:
    """Redirect the browser to Google's consent page."""
    client = request.app.state.oauth.create_client(PROVIDER)
    if client is None:
        return _login_redirect("google_failed")
    redirect_uri = _settings.google_callback_uri or str(request.url_for("google_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/google/callback", name="google_callback")
async def google_callback(request: Request) -> RedirectResponse:
    """Handle the Google callback: provision the account, set cookies, redirect.

    Flow:
      1. Exchange the authorization code (authlib verifies state via session).
      2. Extract a verified email and display name -- ValueError if unverified.
      3. validate_oauth_user() finds or creates the account by email.
      4. Reject deactivated accounts.
      5. Issue tokens, set cookies, redirect to {frontend}/dashboard.
    """
    client = request.app.state.oauth.create_client(PROVIDER)
    if client is None:
        return _login_redirect("google_failed")
    manager: SessionManager = request.app.state.session_manager

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("Google token exchange failed")
        return _login_redirect("google_failed")

    try:
        email, display_name = get_google_user_info(token)
    except ValueError as exc:
        logger.warning("Google sign-in rejected: %s", exc)
        return _login_redirect("google_failed")

    user = manager.validate_oauth_user(email, PROVIDER, display_name)
    if not user.is_active:
        logger.warning("Google sign-in rejected: user %s is deactivated", user.id)
        return _login_redirect("account_disabled")

    try:
        tokens = manager.issue_tokens(user)
    except AuthError:
        return _login_redirect("google_failed")
    manager.record_sign_in(user)

    resp = RedirectResponse(f"{_settings.frontend_url.rstrip('/')}/dashboard", status_code=302)
    set_auth_cookies(resp, tokens.access_token, tokens.refresh_token, tokens.access_max_age, tokens.refresh_max_age)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    body: ForgotPasswordRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    """Start a password reset. The response is identical whether or not the email exists."""
    manager.request_password_reset(body.email)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    body: ResetPasswordRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    """Apply a new password using the selector/token pair from the emailed link."""
    manager.reset_password(body.selector, body.token, body.password)
    return MessageResponse(message="Password has been reset successfully.")
