"""
auth/session.py -- Session manager: login, token issuance, rotation, logout,
OAuth provisioning and the password reset challenge/response.

Pattern: Service layer over the UserStore repository. The manager holds no
mutable state of its own -- everything that must survive between requests
lives in the store, and every concurrency decision is made by the store's
compare-and-delete operations.

Protocol summary:
  login        -> authenticate, then issue_tokens
  issue_tokens -> ledger INSERT (jti, expiry) BEFORE the refresh JWT is signed
  refresh      -> signature check (exp ignored) -> ledger lookup -> owner check
                  -> freshness check -> compare-and-delete -> issue_tokens
  logout       -> delete every ledger row for the user; never raises
  reset        -> selector lookup -> expiry -> argon2 verify of the verifier
                  -> consume challenge + set password in one transaction

Error handling:
  Expected auth failures raise the AuthError subclasses from auth/errors.py.
  Database errors on security-relevant writes are logged with context and
  re-raised as SessionPersistenceFailure / PasswordResetFailure. Best-effort
  side effects (last_login, emails, cleanup of stale rows) are logged and
  never fail the primary operation.

Layer rule: no imports from api/ or mail/. The mailer is injected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    ConflictError,
    InvalidCredentials,
    InvalidOrExpiredResetLink,
    InvalidOrExpiredSession,
    PasswordResetFailure,
    SessionPersistenceFailure,
)
from auth.models import PasswordResetChallenge, RefreshTokenRecord, Role, TokenPair, User, UserSummary
from auth.store import UserStore
from auth.tokens import (
    burn_password_check,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    generate_jti,
    generate_reset_pair,
    hash_password,
    verify_password,
)
from core.config import Settings, get_settings

logger = logging.getLogger("survista.auth.session")

OAUTH_DEFAULT_ROLE = Role.SURVEY_MANAGER


class Mailer(Protocol):
    def send_password_reset_email(self, to_email: str, selector: str, token: str) -> None: ...

    def send_password_reset_confirmation_email(self, to_email: str) -> None: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Orchestrates the authentication and session lifecycle.

    Usage:
        manager = SessionManager(store, MailService(settings))
        tokens, summary = manager.login("a@x.com", "pw12345678")
        tokens, summary = manager.refresh(tokens.refresh_token)
        manager.logout(summary.user_id)
    """

    def __init__(self, store: UserStore, mailer: Mailer, settings: Settings | None = None) -> None:
        self.store = store
        self.mailer = mailer
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Registration and credential checks
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        name: str,
        password: str,
        role: Role = Role.SURVEY_MANAGER,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Create a local-password account. Raises ConflictError on duplicate email."""
        if self.store.get_by_email(email) is not None:
            raise ConflictError()
        new_user = User(
            email=email,
            name=name,
            role=role,
            first_name=first_name,
            last_name=last_name,
            hashed_password=hash_password(password),
        )
        try:
            user_id = self.store.create_user(new_user)
        except IntegrityError as exc:
            # Another request registered the same email between check and insert.
            raise ConflictError() from exc
        logger.info("Registered user %s with role %s", user_id, Role(role).value)
        return self.store.get_by_id(user_id)

    def authenticate(self, email: str, password: str) -> User:
        """Validate email/password with timing equalization.

        Always runs one argon2 verification, whether or not the account exists
        or has a local password. Unknown email, OAuth-only account, wrong
        password and deactivated account all raise the same InvalidCredentials.
        """
        user = self.store.get_by_email(email)
        if user is None or user.hashed_password is None:
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            raise InvalidCredentials()
        if not user.is_active:
            raise InvalidCredentials()
        return user

    def login(self, email: str, password: str) -> tuple[TokenPair, UserSummary]:
        user = self.authenticate(email, password)
        tokens = self.issue_tokens(user)
        self._touch_last_login(user)
        logger.info("User %s logged in", user.id)
        return tokens, UserSummary.from_user(user)

    # ------------------------------------------------------------------
    # Token issuance
    # ------------------------------------------------------------------

    def issue_tokens(self, user: User) -> TokenPair:
        """Issue an access/refresh pair for a user.

        The ledger row is written before the refresh JWT exists. If that write
        fails, nothing is returned and SessionPersistenceFailure is raised, so
        a caller can never hand out a refresh token the ledger does not know.
        """
        access_token = create_access_token(
            user.id, user.email, Role(user.role).value, expire_seconds=self.settings.jwt_access_expiration_time
        )
        jti = generate_jti()
        expires_at = _now() + timedelta(days=self.settings.jwt_refresh_expiration_time)

        try:
            if self.settings.single_session_per_user:
                evicted = self.store.delete_refresh_tokens_for_user(user.id)
                if evicted:
                    logger.info("Evicted %d older session(s) for user %s", evicted, user.id)
            self.store.create_refresh_token(RefreshTokenRecord(jti=jti, user_id=user.id, expires_at=expires_at))
        except SQLAlchemyError as exc:
            logger.error("Failed to store refresh token state for user %s: %s", user.id, exc)
            raise SessionPersistenceFailure() from exc

        refresh_token = create_refresh_token(user.id, jti, expires_at)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_max_age=self.settings.jwt_access_expiration_time,
            refresh_max_age=self.settings.refresh_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Refresh (rotation)
    # ------------------------------------------------------------------

    def refresh(self, presented_token: str) -> tuple[TokenPair, UserSummary]:
        """Rotate a refresh token. Raises InvalidOrExpiredSession on any failure.

        The old jti is consumed with a compare-and-delete. If two requests
        present the same token concurrently, only the one whose delete
        actually removed the row continues; the other fails closed.
        """
        payload = decode_refresh_token(presented_token)
        if payload is None:
            logger.warning("Refresh rejected: bad signature or malformed payload")
            raise InvalidOrExpiredSession()

        user_id, jti = payload["sub"], payload["jti"]
        record = self.store.get_refresh_token(jti)
        if record is None or record.user_id != user_id:
            logger.warning("Refresh rejected: jti %s not found or not owned by user %s", jti, user_id)
            raise InvalidOrExpiredSession()

        if record.expires_at <= _now():
            logger.warning("Refresh rejected: jti %s expired for user %s", jti, user_id)
            self._discard_stale_refresh(jti)
            raise InvalidOrExpiredSession()

        if not self.store.consume_refresh_token(jti, user_id):
            # Lost the race against a concurrent refresh of the same token.
            logger.warning("Refresh rejected: jti %s already consumed", jti)
            raise InvalidOrExpiredSession()

        user = self.store.get_by_id(user_id)
        if user is None or not user.is_active:
            logger.warning("Refresh rejected: user %s missing or inactive", user_id)
            raise InvalidOrExpiredSession()

        tokens = self.issue_tokens(user)
        logger.info("Rotated refresh token for user %s", user_id)
        return tokens, UserSummary.from_user(user)

    def _discard_stale_refresh(self, jti: str) -> None:
        try:
            self.store.delete_refresh_token(jti)
        except SQLAlchemyError as exc:
            logger.warning("Could not delete expired refresh token %s: %s", jti, exc)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user_id: str) -> None:
        """Invalidate every session for the user. Never raises.

        Cookie clearing is the caller's job and must happen regardless --
        server-side bookkeeping failures must not block client-side logout.
        """
        try:
            count = self.store.delete_refresh_tokens_for_user(user_id)
        except SQLAlchemyError as exc:
            logger.error("Failed to delete refresh tokens for user %s: %s", user_id, exc)
            return
        logger.info("Invalidated %d refresh token(s) for user %s", count, user_id)

    # ------------------------------------------------------------------
    # OAuth provisioning
    # ------------------------------------------------------------------

    def validate_oauth_user(self, email: str, provider: str, display_name: str) -> User:
        """Return the account for an OAuth identity, creating it on first sign-in.

        Accounts are keyed by email, so OAuth and password login coexist on
        one account. New accounts get OAUTH_DEFAULT_ROLE and no password hash.
        Does not issue tokens.
        """
        existing = self.store.get_by_email(email)
        if existing is not None:
            logger.info("%s sign-in matched existing user %s", provider, existing.id)
            return existing

        try:
            user_id = self.store.create_user(
                User(email=email, name=display_name, role=OAUTH_DEFAULT_ROLE, hashed_password=None)
            )
        except IntegrityError:
            # Concurrent first sign-in created the row first; use it.
            existing = self.store.get_by_email(email)
            if existing is None:
                raise
            return existing
        logger.info("Provisioned %s user %s", provider, user_id)
        return self.store.get_by_id(user_id)

    def record_sign_in(self, user: User) -> None:
        """Stamp last_login after a non-password sign-in (best-effort)."""
        self._touch_last_login(user)

    def _touch_last_login(self, user: User) -> None:
        try:
            self.store.update_last_login(user.id)
        except SQLAlchemyError as exc:
            logger.warning("Could not update last_login for user %s: %s", user.id, exc)

    # ------------------------------------------------------------------
    # Password reset -- phase 1: request
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Create a reset challenge and email the link. Always returns None.

        The caller answers identically whatever happens here, so the response
        never reveals whether the email belongs to an account.
        """
        user = self.store.get_by_email(email)
        if user is None or user.hashed_password is None:
            logger.info("Password reset requested for unknown or OAuth-only account; ignoring")
            return

        selector, verifier = generate_reset_pair()
        challenge = PasswordResetChallenge(
            user_id=user.id,
            selector=selector,
            token_hash=hash_password(verifier),
            expires_at=_now() + timedelta(minutes=self.settings.password_reset_expire_minutes),
        )
        try:
            self.store.replace_password_reset(challenge)
        except SQLAlchemyError as exc:
            logger.error("Failed to store password reset challenge for user %s: %s", user.id, exc)
            return
        logger.info("Password reset challenge (selector %s) stored for user %s", selector, user.id)

        try:
            self.mailer.send_password_reset_email(user.email, selector, verifier)
        except Exception:
            # The row stays; a repeat request supersedes it.
            logger.exception("Password reset email for user %s was not delivered", user.id)

    # ------------------------------------------------------------------
    # Password reset -- phase 2: verify and apply
    # ------------------------------------------------------------------

    def reset_password(self, selector: str, verifier: str, new_password: str) -> None:
        """Apply a new password if the selector/verifier pair is live.

        Raises InvalidOrExpiredResetLink for unknown, expired, mismatched or
        already-consumed links, and PasswordResetFailure if the password
        update / challenge deletion unit cannot be committed.
        """
        challenge = self.store.get_password_reset_by_selector(selector)
        if challenge is None:
            logger.warning("Password reset rejected: unknown selector")
            raise InvalidOrExpiredResetLink()
        if challenge.expires_at < _now():
            logger.warning("Password reset rejected: challenge %s expired", challenge.id)
            raise InvalidOrExpiredResetLink()
        if not verify_password(verifier, challenge.token_hash):
            logger.warning("Password reset rejected: verifier mismatch for challenge %s", challenge.id)
            raise InvalidOrExpiredResetLink()

        user = self.store.get_by_id(challenge.user_id)
        if user is None:
            logger.error("User %s not found for valid reset challenge %s", challenge.user_id, challenge.id)
            raise PasswordResetFailure()

        new_hash = hash_password(new_password)
        try:
            applied = self.store.apply_password_reset(challenge.id, user.id, new_hash)
        except SQLAlchemyError as exc:
            logger.error("Failed to finalize password reset for user %s: %s", user.id, exc)
            raise PasswordResetFailure() from exc
        if not applied:
            logger.warning("Password reset rejected: challenge %s consumed concurrently", challenge.id)
            raise InvalidOrExpiredResetLink()
        logger.info("Password reset completed for user %s", user.id)

        if self.settings.revoke_sessions_on_password_reset:
            self.logout(user.id)

        try:
            self.mailer.send_password_reset_confirmation_email(user.email)
        except Exception:
            logger.exception("Password reset confirmation for user %s was not delivered", user.id)
