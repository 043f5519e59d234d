"""
tests/conftest.py -- Shared test fixtures for the Survista auth service.

This module provides:
  - RecordingMailer: stands in for MailService and keeps every message it is asked to send
  - make_test_store(): isolated in-memory DB per test
  - store / mailer / manager: unit-level fixtures for the session manager
  - app_env: TestClient over the real app with a patched lifespan
  - create_user(): insert a user with a known password

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
Each test gets a uniquely named DB so ledger state never leaks between tests.

DEBUG, ALLOWED_HOSTS and LOGIN_RATE_LIMIT must be set before any api/, auth/
or core/ import: get_settings() is cached at first call, tokens.py reads it at
module load, and the login rate limit is bound when the route is decorated.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import so get_settings() generates dev
# secrets instead of raising, and so the TestClient host passes TrustedHost.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role, User
from auth.session import SessionManager
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from mail.service import MailDeliveryError

DEFAULT_PASSWORD = "pw12345678"


# ---------------------------------------------------------------------------
# Mail double
# ---------------------------------------------------------------------------


@dataclass
class RecordingMailer:
    """Records outgoing mail instead of sending it.

    Set fail=True to make every send raise MailDeliveryError, the way
    MailService does when the SMTP server is unreachable.
    """

    fail: bool = False
    reset_emails: list[tuple[str, str, str]] = field(default_factory=list)
    confirmations: list[str] = field(default_factory=list)

    def send_password_reset_email(self, to_email: str, selector: str, token: str) -> None:
        if self.fail:
            raise MailDeliveryError("smtp down")
        self.reset_emails.append((to_email, selector, token))

    def send_password_reset_confirmation_email(self, to_email: str) -> None:
        if self.fail:
            raise MailDeliveryError("smtp down")
        self.confirmations.append(to_email)

    @property
    def last_reset(self) -> tuple[str, str, str]:
        return self.reset_emails[-1]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_store() -> UserStore:
    """Create a UserStore on a uniquely named shared-memory SQLite database."""
    return UserStore(db_url=f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def create_user(
    store: UserStore,
    email: str = "a@x.com",
    password: str | None = DEFAULT_PASSWORD,
    role: Role = Role.SURVEY_MANAGER,
    name: str = "Test User",
    is_active: bool = True,
) -> User:
    """Insert a user directly (bypassing the API) and return the stored record."""
    uid = store.create_user(
        User(
            email=email,
            name=name,
            role=role,
            hashed_password=hash_password(password) if password is not None else None,
            is_active=is_active,
        )
    )
    return store.get_by_id(uid)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> Generator[UserStore, None, None]:
    s = make_test_store()
    yield s
    s.close()


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def manager(store: UserStore, mailer: RecordingMailer) -> SessionManager:
    return SessionManager(store, mailer, get_settings())


# ---------------------------------------------------------------------------
# App fixture
# ---------------------------------------------------------------------------


@dataclass
class AppEnv:
    client: TestClient
    store: UserStore
    mailer: RecordingMailer
    manager: SessionManager


def _patch_lifespan(user_store: UserStore, mailer: RecordingMailer, manager: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, recording mailer and session manager into app.state,
    and mocks the OAuth registry so no test ever reaches Google.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; MagicMock would not behave on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.mailer = mailer
        app.state.session_manager = manager
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture()
def app_env() -> Generator[AppEnv, None, None]:
    """Yield a TestClient over the real app with an isolated store.

    follow_redirects=False so OAuth tests can assert on Location headers.
    A fresh client per test means a fresh cookie jar per test.
    """
    user_store = make_test_store()
    mailer = RecordingMailer()
    manager = SessionManager(user_store, mailer, get_settings())
    app.router.lifespan_context = _patch_lifespan(user_store, mailer, manager)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AppEnv(client=client, store=user_store, mailer=mailer, manager=manager)

    user_store.close()


def login_as(client: TestClient, email: str, password: str = DEFAULT_PASSWORD):
    """POST /api/auth/login and return the response (cookies land in the client jar)."""
    return client.post("/api/auth/login", json={"email": email, "password": password})


def set_cookie_headers(resp) -> list[str]:
    """Every Set-Cookie value on a Starlette or httpx response.

    Both header classes expose the raw (name, value) byte pairs, so this works
    for TestClient responses and for Response objects built directly.
    """
    return [v.decode("latin-1") for k, v in resp.headers.raw if k.lower() == b"set-cookie"]
