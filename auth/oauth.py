"""
auth/oauth.py -- Authlib Google OIDC client configuration.

Reads configuration from core.config.get_settings() at module load. Google is
registered only when both client ID and secret are configured; when it is not,
oauth.create_client("google") returns None and the routes redirect back to the
frontend login page with error=google_failed.

Security notes:
  Email verification is mandatory. get_google_user_info() raises ValueError
  unless Google confirms email_verified. Accounts are keyed by email, so an
  unverified address would let anyone claim an existing account.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. The session stores the state between the authorization
  redirect and the callback.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("survista.auth.oauth")

PROVIDER = "google"

oauth = OAuth()

_cfg = get_settings()

if _cfg.google_enabled:
    oauth.register(
        name=PROVIDER,
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")
else:
    logger.info("Google OAuth not configured; /auth/google will redirect with an error")


def get_google_user_info(token: dict) -> tuple[str, str]:
    """Extract (email, display_name) from a Google token response.

    The display name falls back from ``name`` to given + family name, then to
    the email local part.

    Raises:
        ValueError: If userinfo is missing, the email is absent, or Google
                    does not confirm the email as verified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError("google OAuth: email is not verified")

    email = userinfo.get("email")
    if not email:
        raise ValueError("google OAuth: missing email claim in userinfo")

    name = userinfo.get("name")
    if not name:
        parts = [userinfo.get("given_name"), userinfo.get("family_name")]
        name = " ".join(p for p in parts if p) or email.split("@", 1)[0]

    return email, name
