"""
auth/tokens.py -- JWT, password hashing, random secrets and cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Two token kinds, two secrets:
       access  -- {sub, email, role, exp}; stateless, validity = signature + exp.
       refresh -- {sub, jti, exp}; the ledger row with the same jti is the
                  source of truth, so decode_refresh_token() deliberately skips
                  the exp check and leaves freshness to the session manager.
       Verification returns None on any failure -- callers turn that into the
       appropriate error.

  Hashing: argon2id via argon2-cffi. Used for passwords and for password
       reset verifiers. PasswordHasher.verify() compares in constant time.
       The _DUMMY_HASH constant enables timing equalization in
       SessionManager.authenticate() so response time does not reveal whether
       an email exists.

  Random values: secrets.token_hex gives 128-bit selectors / jtis and 256-bit
       reset verifiers.

  Secrets: sourced from core.config.get_settings(), read once at module load.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jose import JWTError, jwt

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

# ---------------------------------------------------------------------------
# Hashing (argon2id)
# ---------------------------------------------------------------------------

_hasher = PasswordHasher()


def hash_password(plain: str) -> str:
    """Return an argon2id hash of the given secret (password or reset verifier)."""
    return _hasher.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the argon2 hash.

    A malformed stored hash is treated as a mismatch, never as an error.
    """
    try:
        return _hasher.verify(hashed, plain)
    except (VerificationError, InvalidHashError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("survista_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one verification against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Random identifiers
# ---------------------------------------------------------------------------


def generate_jti() -> str:
    """Return a random refresh token identifier (128 bits, hex)."""
    return secrets.token_hex(16)


def generate_reset_pair() -> tuple[str, str]:
    """Return (selector, verifier) for a password reset link.

    The selector is public and used for lookup; the verifier is the secret
    half and is only ever stored hashed.
    """
    return secrets.token_hex(16), secrets.token_hex(32)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, email: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed access JWT.

    Args:
        user_id:        User primary key, stored as the sub claim.
        email:          User email.
        role:           User role value.
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.jwt_access_expiration_time.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.jwt_access_expiration_time
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.jwt_secret, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT (signature and exp). Returns None on any failure."""
    try:
        payload = jwt.decode(token, _settings.jwt_secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub") or "role" not in payload:
        return None
    return payload


def create_refresh_token(user_id: str, jti: str, expires_at: datetime) -> str:
    """Encode a signed refresh JWT whose exp mirrors the ledger row's expiry."""
    payload = {
        "sub": user_id,
        "jti": jti,
        "exp": expires_at,
    }
    return jwt.encode(payload, _settings.jwt_refresh_secret, algorithm=_ALGORITHM)


def decode_refresh_token(token: str) -> dict | None:
    """Verify a refresh JWT's signature only. Returns None on any failure.

    exp is intentionally not enforced here: the ledger record decides
    freshness, and an expired-but-recorded token must still be decodable so
    its stale row can be cleaned up.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.jwt_refresh_secret,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return None
    if not payload.get("sub") or not payload.get("jti"):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _cookie_options() -> dict:
    return {
        "httponly": True,
        "samesite": _settings.cookie_samesite,
        "secure": _settings.cookie_secure,
        "path": "/",
    }


def set_auth_cookies(response, access_token: str, refresh_token: str, access_max_age: int, refresh_max_age: int) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite: lax by default, strict if configured -- CSRF mitigation.
    secure: only sent over HTTPS outside DEBUG (or as SECURE_COOKIES says).
    max_age: matches each token's lifetime so cookie and token expire together.
    """
    options = _cookie_options()
    response.set_cookie(ACCESS_COOKIE, value=access_token, max_age=access_max_age, **options)
    response.set_cookie(REFRESH_COOKIE, value=refresh_token, max_age=refresh_max_age, **options)


def clear_auth_cookies(response) -> None:
    """Expire both auth cookies. Options must match the ones used to set them."""
    options = _cookie_options()
    response.delete_cookie(ACCESS_COOKIE, **options)
    response.delete_cookie(REFRESH_COOKIE, **options)
