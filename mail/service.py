"""
mail/service.py -- Templated transactional email for the auth flows.

The session manager treats mail as a black box: it calls
send_password_reset_email() / send_password_reset_confirmation_email() and
treats any failure as non-fatal. Nothing here knows about the ledger or tokens
beyond the two strings that go into the reset link.

Bodies are rendered from Jinja2 templates in mail/templates/ (a .txt and an
.html part per message). HTML templates are autoescaped.

Development mode: when SMTP_HOST is empty, messages are logged (recipient
redacted) instead of sent, so local runs and tests need no mail server.

Layer rule: may import from core/. Must not import from api/ or auth/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import Settings

logger = logging.getLogger("survista.mail")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


class MailDeliveryError(Exception):
    """Raised when the SMTP transport rejects or cannot deliver a message."""


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class MailService:
    """SMTP sender for password reset and confirmation messages."""

    def __init__(self, settings: Settings) -> None:
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.mail_from
        self.from_name = settings.mail_from_name
        self.frontend_url = settings.frontend_url.rstrip("/")
        self.reset_expire_minutes = settings.password_reset_expire_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def build_reset_url(self, selector: str, token: str) -> str:
        query = urlencode({"selector": selector, "token": token})
        return f"{self.frontend_url}/auth/reset-password?{query}"

    def send_password_reset_email(self, to_email: str, selector: str, token: str) -> None:
        context = {
            "reset_url": self.build_reset_url(selector, token),
            "expires_minutes": self.reset_expire_minutes,
        }
        self._send_template(to_email, "Your Survista Password Reset Request", "password_reset", context)

    def send_password_reset_confirmation_email(self, to_email: str) -> None:
        self._send_template(
            to_email,
            "Your Survista Password Has Been Changed",
            "password_reset_confirmation",
            {"email": to_email},
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send_template(self, to_email: str, subject: str, template: str, context: dict) -> None:
        text_body = _templates.get_template(f"{template}.txt").render(**context)
        html_body = _templates.get_template(f"{template}.html").render(**context)
        self._send(to_email, subject, text_body, html_body)

    def _send(self, to_email: str, subject: str, text_body: str, html_body: str) -> None:
        """Deliver one message. Raises MailDeliveryError on any transport failure."""
        if not self.is_configured:
            # Body is not logged: the reset message carries a live verifier.
            logger.info("Mail transport not configured; dropping %r to %s", subject, redact_email(to_email))
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Failed to send %r to %s via %s:%d: %s",
                subject,
                redact_email(to_email),
                self.smtp_host,
                self.smtp_port,
                type(exc).__name__,
            )
            raise MailDeliveryError(f"Could not send {subject!r}") from exc

        logger.info("Sent %r to %s", subject, redact_email(to_email))
