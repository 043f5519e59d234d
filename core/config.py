"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Survista happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates signing secrets with a
      warning, production mode refuses to start without them.

Security notes:
  - Signing secrets shorter than 32 chars are rejected outright. HMAC-SHA256
    JWT signing relies on key entropy.

  - In production mode (DEBUG not set or false), a missing JWT_SECRET or
    JWT_REFRESH_SECRET is a hard startup failure.

  - Access and refresh tokens are signed with distinct secrets so an access
    token can never be replayed against /auth/refresh (and vice versa).

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or mail/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("survista.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'survista_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    # Comma-separated host list for TrustedHostMiddleware.
    allowed_hosts: str = "localhost,127.0.0.1,*.localhost"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_access_expiration_time: int = 900  # seconds
    jwt_refresh_expiration_time: int = 7  # days
    password_reset_expire_minutes: int = 60

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    # None means "derive from DEBUG": secure everywhere except local dev.
    secure_cookies: Optional[bool] = None
    cookie_samesite: Literal["lax", "strict"] = "lax"

    # ------------------------------------------------------------------
    # Frontend / OAuth
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    google_client_id: str = ""
    google_client_secret: str = ""
    google_callback_uri: str = ""
    # Signs the Starlette session cookie that carries OAuth state only.
    session_secret: str = ""

    # ------------------------------------------------------------------
    # Mail (empty smtp_host = log-only delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "noreply@survista.example"
    mail_from_name: str = "Survista Support"

    # ------------------------------------------------------------------
    # Sessions / rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "5/minute"
    single_session_per_user: bool = False
    revoke_sessions_on_password_reset: bool = True
    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def cookie_secure(self) -> bool:
        """Return the effective Secure flag for auth cookies."""
        if self.secure_cookies is not None:
            return self.secure_cookies
        return not self.debug

    @property
    def refresh_expire_seconds(self) -> int:
        return self.jwt_refresh_expiration_time * 24 * 60 * 60

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    def get_allowed_hosts(self) -> list[str]:
        """Parse ALLOWED_HOSTS into a list for TrustedHostMiddleware."""
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce signing-secret policy.

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing, or if
            Google sign-in is enabled without SESSION_SECRET.

        Both modes: reject secrets shorter than 32 characters and refuse to
            reuse the access secret for refresh tokens.
        """
        for field_name in ("jwt_secret", "jwt_refresh_secret"):
            if getattr(self, field_name):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field_name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field_name, secrets.token_hex(32))
            logger.warning(
                "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                field_name.upper(),
            )
        if len(self.jwt_secret) < 32 or len(self.jwt_refresh_secret) < 32:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be at least 32 characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different.")
        if not self.session_secret:
            # Every worker must verify the OAuth state cookie the others signed.
            if self.google_enabled and not self.debug:
                raise ValueError(
                    "SESSION_SECRET is required in production mode when Google sign-in is enabled."
                )
            self.session_secret = secrets.token_hex(32)
        if self.jwt_access_expiration_time <= 0 or self.jwt_refresh_expiration_time <= 0:
            raise ValueError("Token lifetimes must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
