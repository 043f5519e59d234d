"""
auth/errors.py -- Exception taxonomy for the authentication subsystem.

Each exception carries the HTTP status and a stable machine-readable code.
api/main.py installs one handler for AuthError that renders the standard
error envelope, so route handlers let these propagate instead of building
HTTPExceptions by hand.

Messages are deliberately generic. InvalidCredentials in particular must read
the same whether the email is unknown, the account is OAuth-only, or the
password is wrong.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for session-manager failures mapped to HTTP responses."""

    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    status_code = 401
    code = "bad_credentials"
    message = "Invalid email or password."


class InvalidOrExpiredSession(AuthError):
    """Refresh token failed signature, ledger, ownership or freshness checks.

    Terminal for that token -- the client must log in again.
    """

    status_code = 401
    code = "invalid_session"
    message = "Invalid or expired refresh token."


class InvalidOrExpiredResetLink(AuthError):
    status_code = 400
    code = "invalid_reset_link"
    message = "Invalid or expired password reset link."


class SessionPersistenceFailure(AuthError):
    """A ledger write failed while issuing tokens. No tokens were returned."""

    status_code = 500
    code = "session_persistence_failure"
    message = "Could not process session."


class PasswordResetFailure(AuthError):
    """The password update / challenge deletion unit could not be completed."""

    status_code = 500
    code = "password_reset_failure"
    message = "Could not finalize password reset."


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    message = "Email already registered."


class UserNotFound(AuthError):
    status_code = 404
    code = "not_found"
    message = "User not found."
