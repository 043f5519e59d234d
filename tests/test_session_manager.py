"""
tests/test_session_manager.py -- Unit tests for auth/session.py (SessionManager).

Exercises the protocol directly against an in-memory store, without HTTP:
  - login: uniform InvalidCredentials for every failure shape
  - issue_tokens: ledger row written first; write failure returns no tokens
  - refresh: rotation, replay rejection, ownership/freshness checks, lost race
  - logout: revokes every session, never raises
  - validate_oauth_user: find-or-create by email
  - password reset: selector/verifier protocol, expiry, single use
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import (
    ConflictError,
    InvalidCredentials,
    InvalidOrExpiredResetLink,
    InvalidOrExpiredSession,
    PasswordResetFailure,
    SessionPersistenceFailure,
)
from auth.models import PasswordResetChallenge, RefreshTokenRecord, Role
from auth.session import SessionManager
from auth.store import UserStore
from auth.tokens import create_refresh_token, decode_access_token, decode_refresh_token, hash_password, verify_password
from core.config import get_settings
from conftest import DEFAULT_PASSWORD, RecordingMailer, create_user


def _db_error() -> OperationalError:
    return OperationalError("INSERT", {}, Exception("database is locked"))


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------


class TestRegisterAndLogin:
    def test_register_creates_survey_manager(self, manager, store) -> None:
        user = manager.register("New@X.com", "New User", DEFAULT_PASSWORD)
        assert user.email == "new@x.com"
        assert user.role == Role.SURVEY_MANAGER
        assert verify_password(DEFAULT_PASSWORD, store.get_by_id(user.id).hashed_password)

    def test_register_duplicate_email_conflicts(self, manager) -> None:
        manager.register("a@x.com", "A", DEFAULT_PASSWORD)
        with pytest.raises(ConflictError):
            manager.register("A@X.COM", "A again", DEFAULT_PASSWORD)

    def test_login_with_correct_password(self, manager, store) -> None:
        user = create_user(store)
        tokens, summary = manager.login("a@x.com", DEFAULT_PASSWORD)
        assert summary.user_id == user.id
        assert summary.email == "a@x.com"
        assert decode_access_token(tokens.access_token)["sub"] == user.id
        assert tokens.access_max_age == get_settings().jwt_access_expiration_time

    def test_login_stamps_last_login(self, manager, store) -> None:
        user = create_user(store)
        manager.login("a@x.com", DEFAULT_PASSWORD)
        assert store.get_by_id(user.id).last_login is not None

    def test_login_is_case_insensitive_on_email(self, manager, store) -> None:
        create_user(store)
        manager.login("A@X.COM", DEFAULT_PASSWORD)

    @pytest.mark.parametrize(
        "email,password,stored_password,active",
        [
            ("nobody@x.com", DEFAULT_PASSWORD, DEFAULT_PASSWORD, True),  # unknown email
            ("a@x.com", "wrong-password", DEFAULT_PASSWORD, True),  # wrong password
            ("a@x.com", DEFAULT_PASSWORD, None, True),  # OAuth-only account
            ("a@x.com", DEFAULT_PASSWORD, DEFAULT_PASSWORD, False),  # deactivated
        ],
    )
    def test_every_failure_is_the_same_error(self, manager, store, email, password, stored_password, active) -> None:
        create_user(store, password=stored_password, is_active=active)
        with pytest.raises(InvalidCredentials) as exc_info:
            manager.login(email, password)
        assert exc_info.value.message == InvalidCredentials.message

    def test_failed_login_issues_no_session(self, manager, store) -> None:
        user = create_user(store)
        with pytest.raises(InvalidCredentials):
            manager.login("a@x.com", "wrong-password")
        assert store.list_refresh_tokens(user.id) == []


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


class TestIssueTokens:
    def test_ledger_row_matches_refresh_token(self, manager, store) -> None:
        user = create_user(store)
        tokens = manager.issue_tokens(user)
        payload = decode_refresh_token(tokens.refresh_token)
        record = store.get_refresh_token(payload["jti"])
        assert record is not None
        assert record.user_id == user.id
        assert record.expires_at > datetime.now(timezone.utc) + timedelta(days=6)

    def test_multiple_sessions_coexist_by_default(self, manager, store) -> None:
        user = create_user(store)
        manager.issue_tokens(user)
        manager.issue_tokens(user)
        assert len(store.list_refresh_tokens(user.id)) == 2

    def test_single_session_mode_evicts_older_rows(self, store, mailer) -> None:
        settings = get_settings().model_copy(update={"single_session_per_user": True})
        single = SessionManager(store, mailer, settings)
        user = create_user(store)
        first = single.issue_tokens(user)
        second = single.issue_tokens(user)
        assert len(store.list_refresh_tokens(user.id)) == 1
        with pytest.raises(InvalidOrExpiredSession):
            single.refresh(first.refresh_token)
        single.refresh(second.refresh_token)

    def test_cookie_max_age_matches_injected_lifetimes(self, store, mailer) -> None:
        """Token exp claims follow the manager's settings, not the module defaults."""
        settings = get_settings().model_copy(
            update={"jwt_access_expiration_time": 60, "jwt_refresh_expiration_time": 1}
        )
        short = SessionManager(store, mailer, settings)
        tokens, _ = short.login(create_user(store).email, DEFAULT_PASSWORD)
        now = datetime.now(timezone.utc).timestamp()

        assert tokens.access_max_age == 60
        access_life = decode_access_token(tokens.access_token)["exp"] - now
        assert abs(access_life - tokens.access_max_age) < 5

        assert tokens.refresh_max_age == 86400
        refresh_life = decode_refresh_token(tokens.refresh_token)["exp"] - now
        assert abs(refresh_life - tokens.refresh_max_age) < 5

    def test_ledger_failure_returns_no_tokens(self, manager, store, monkeypatch) -> None:
        user = create_user(store)

        def boom(record):
            raise _db_error()

        monkeypatch.setattr(store, "create_refresh_token", boom)
        with pytest.raises(SessionPersistenceFailure):
            manager.issue_tokens(user)


# ---------------------------------------------------------------------------
# Refresh rotation
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation_issues_new_pair_and_kills_old(self, manager, store) -> None:
        user = create_user(store)
        original = manager.issue_tokens(user)
        rotated, summary = manager.refresh(original.refresh_token)
        assert summary.user_id == user.id
        assert rotated.refresh_token != original.refresh_token
        old_jti = decode_refresh_token(original.refresh_token)["jti"]
        new_jti = decode_refresh_token(rotated.refresh_token)["jti"]
        assert store.get_refresh_token(old_jti) is None
        assert store.get_refresh_token(new_jti) is not None

    def test_replay_of_rotated_token_fails(self, manager, store) -> None:
        user = create_user(store)
        original = manager.issue_tokens(user)
        manager.refresh(original.refresh_token)
        with pytest.raises(InvalidOrExpiredSession):
            manager.refresh(original.refresh_token)

    def test_garbage_token_fails(self, manager) -> None:
        with pytest.raises(InvalidOrExpiredSession):
            manager.refresh("not-a-jwt")

    def test_unrecorded_jti_fails(self, manager, store) -> None:
        user = create_user(store)
        forged = create_refresh_token(user.id, "never-recorded", datetime.now(timezone.utc) + timedelta(days=1))
        with pytest.raises(InvalidOrExpiredSession):
            manager.refresh(forged)

    def test_owner_mismatch_fails_and_keeps_row(self, manager, store) -> None:
        owner = create_user(store, email="o@x.com")
        other = create_user(store, email="p@x.com")
        store.create_refresh_token(
            RefreshTokenRecord(jti="j1", user_id=owner.id, expires_at=datetime.now(timezone.utc) + timedelta(days=1))
        )
        forged = create_refresh_token(other.id, "j1", datetime.now(timezone.utc) + timedelta(days=1))
        with pytest.raises(InvalidOrExpiredSession):
            manager.refresh(forged)
        assert store.get_refresh_token("j1") is not None

    def test_expired_record_fails_and_is_cleaned_up(self, manager, store) -> None:
        user = create_user(store)
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        store.create_refresh_token(RefreshTokenRecord(jti="stale", user_id=user.id, expires_at=past))
        token = create_refresh_token(user.id, "stale", past)
        with pytest.raises(InvalidOrExpiredSession):
            manager.refresh(token)
        assert store.get_refresh_token("stale") is None

    def test_deactivated_user_cannot_refresh(self, manager, store) -> None:
        user = create_user(store)
        tokens = manager.issue_tokens(user)
        store.update_user(user.id, is_active=False)
        with pytest.raises(InvalidOrExpiredSession):
            manager.refresh(tokens.refresh_token)

    def test_losing_a_concurrent_refresh_fails_closed(self, mailer) -> None:
        """Another request consumes the row between our lookup and our delete."""

        class RacingStore(UserStore):
            def get_refresh_token(self, jti):
                record = super().get_refresh_token(jti)
                if record is not None:
                    self.consume_refresh_token(jti, record.user_id)
                return record

        racing = RacingStore(f"sqlite:///file:test_race_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
        try:
            user = create_user(racing)
            racing_manager = SessionManager(racing, mailer, get_settings())
            tokens = racing_manager.issue_tokens(user)
            with pytest.raises(InvalidOrExpiredSession):
                racing_manager.refresh(tokens.refresh_token)
            assert racing.list_refresh_tokens(user.id) == []
        finally:
            racing.close()


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_revokes_every_session(self, manager, store) -> None:
        user = create_user(store)
        first = manager.issue_tokens(user)
        second = manager.issue_tokens(user)
        manager.logout(user.id)
        for tokens in (first, second):
            with pytest.raises(InvalidOrExpiredSession):
                manager.refresh(tokens.refresh_token)

    def test_logout_swallows_store_errors(self, manager, store, monkeypatch) -> None:
        def boom(user_id):
            raise _db_error()

        monkeypatch.setattr(store, "delete_refresh_tokens_for_user", boom)
        assert manager.logout("any-user") is None


# ---------------------------------------------------------------------------
# OAuth provisioning
# ---------------------------------------------------------------------------


class TestValidateOAuthUser:
    def test_creates_oauth_only_user(self, manager, store) -> None:
        user = manager.validate_oauth_user("G@Example.com", "google", "Gee User")
        assert user.email == "g@example.com"
        assert user.name == "Gee User"
        assert user.role == Role.SURVEY_MANAGER
        assert user.hashed_password is None
        with pytest.raises(InvalidCredentials):
            manager.login("g@example.com", "any-password")

    def test_returns_existing_account_with_password(self, manager, store) -> None:
        existing = create_user(store)
        user = manager.validate_oauth_user("a@x.com", "google", "Other Name")
        assert user.id == existing.id
        assert user.name == existing.name
        manager.login("a@x.com", DEFAULT_PASSWORD)

    def test_does_not_issue_tokens(self, manager, store) -> None:
        user = manager.validate_oauth_user("g@example.com", "google", "G")
        assert store.list_refresh_tokens(user.id) == []


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_request_sends_selector_and_verifier(self, manager, store, mailer) -> None:
        user = create_user(store)
        manager.request_password_reset("A@x.com")
        to_email, selector, verifier = mailer.last_reset
        assert to_email == "a@x.com"
        challenge = store.get_password_reset_by_selector(selector)
        assert challenge.user_id == user.id
        assert challenge.token_hash != verifier
        assert verify_password(verifier, challenge.token_hash)
        remaining = challenge.expires_at - datetime.now(timezone.utc)
        assert timedelta(minutes=59) < remaining <= timedelta(hours=1)

    def test_unknown_and_oauth_only_emails_do_nothing(self, manager, store, mailer) -> None:
        create_user(store, email="oauth@x.com", password=None)
        assert manager.request_password_reset("nobody@x.com") is None
        assert manager.request_password_reset("oauth@x.com") is None
        assert mailer.reset_emails == []

    def test_new_request_supersedes_old(self, manager, store, mailer) -> None:
        create_user(store)
        manager.request_password_reset("a@x.com")
        _, old_selector, old_verifier = mailer.last_reset
        manager.request_password_reset("a@x.com")
        assert store.get_password_reset_by_selector(old_selector) is None
        with pytest.raises(InvalidOrExpiredResetLink):
            manager.reset_password(old_selector, old_verifier, "new-password-1")

    def test_mail_failure_is_swallowed_and_challenge_kept(self, store) -> None:
        user = create_user(store)
        failing = SessionManager(store, RecordingMailer(fail=True), get_settings())
        assert failing.request_password_reset("a@x.com") is None
        assert store.get_password_reset_for_user(user.id) is not None

    def test_reset_happy_path(self, manager, store, mailer) -> None:
        create_user(store)
        manager.request_password_reset("a@x.com")
        _, selector, verifier = mailer.last_reset
        manager.reset_password(selector, verifier, "brand-new-pass")
        manager.login("a@x.com", "brand-new-pass")
        with pytest.raises(InvalidCredentials):
            manager.login("a@x.com", DEFAULT_PASSWORD)
        assert mailer.confirmations == ["a@x.com"]

    def test_wrong_verifier_fails_then_right_one_works_once(self, manager, store, mailer) -> None:
        create_user(store)
        manager.request_password_reset("a@x.com")
        _, selector, verifier = mailer.last_reset
        with pytest.raises(InvalidOrExpiredResetLink):
            manager.reset_password(selector, "0" * 64, "brand-new-pass")
        manager.reset_password(selector, verifier, "brand-new-pass")
        with pytest.raises(InvalidOrExpiredResetLink):
            manager.reset_password(selector, verifier, "another-pass-2")

    def test_unknown_selector_fails(self, manager) -> None:
        with pytest.raises(InvalidOrExpiredResetLink):
            manager.reset_password("no-such-selector", "x" * 64, "brand-new-pass")

    def test_expired_challenge_fails_with_correct_verifier(self, manager, store) -> None:
        user = create_user(store)
        store.replace_password_reset(
            PasswordResetChallenge(
                user_id=user.id,
                selector="sel",
                token_hash=hash_password("the-verifier"),
                expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
            )
        )
        with pytest.raises(InvalidOrExpiredResetLink):
            manager.reset_password("sel", "the-verifier", "brand-new-pass")
        manager.login("a@x.com", DEFAULT_PASSWORD)

    def test_reset_revokes_existing_sessions(self, manager, store, mailer) -> None:
        user = create_user(store)
        tokens = manager.issue_tokens(user)
        manager.request_password_reset("a@x.com")
        _, selector, verifier = mailer.last_reset
        manager.reset_password(selector, verifier, "brand-new-pass")
        with pytest.raises(InvalidOrExpiredSession):
            manager.refresh(tokens.refresh_token)

    def test_reset_can_keep_sessions_when_configured(self, store, mailer) -> None:
        settings = get_settings().model_copy(update={"revoke_sessions_on_password_reset": False})
        keeping = SessionManager(store, mailer, settings)
        user = create_user(store)
        tokens = keeping.issue_tokens(user)
        keeping.request_password_reset("a@x.com")
        _, selector, verifier = mailer.last_reset
        keeping.reset_password(selector, verifier, "brand-new-pass")
        keeping.refresh(tokens.refresh_token)

    def test_persistence_failure_is_surfaced(self, manager, store, mailer, monkeypatch) -> None:
        create_user(store)
        manager.request_password_reset("a@x.com")
        _, selector, verifier = mailer.last_reset

        def boom(challenge_id, user_id, hashed_password):
            raise _db_error()

        monkeypatch.setattr(store, "apply_password_reset", boom)
        with pytest.raises(PasswordResetFailure):
            manager.reset_password(selector, verifier, "brand-new-pass")
        assert mailer.confirmations == []

    def test_confirmation_mail_failure_does_not_fail_reset(self, store) -> None:
        mailer = RecordingMailer()
        manager = SessionManager(store, mailer, get_settings())
        create_user(store)
        manager.request_password_reset("a@x.com")
        _, selector, verifier = mailer.last_reset
        mailer.fail = True
        manager.reset_password(selector, verifier, "brand-new-pass")
        manager.login("a@x.com", "brand-new-pass")
