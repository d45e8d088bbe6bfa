"""
auth/mailer.py -- Outbound email for verification and password reset links.

The service depends on the Mailer protocol, not on SMTP: anything with a
send(to, subject, body) method works. Two implementations ship here:

  SMTPMailer    -- smtplib with STARTTLS and a bounded socket timeout. Any
                   transport failure is re-raised as MailDeliveryError.
  ConsoleMailer -- logs the message instead of sending it. Used when
                   SMTP_HOST is empty, i.e. local development.

Message builders (verification_message, reset_message) live here too so the
wording of every email is in one place.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol
from urllib.parse import urlencode

logger = logging.getLogger("authstarter.mailer")


class MailDeliveryError(Exception):
    """The transport could not hand the message off."""


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> None: ...


class SMTPMailer:
    """Send plain-text mail through an SMTP relay.

    Usage:
        mailer = SMTPMailer("smtp.example.com", 587, "user", "pass", sender="no-reply@example.com")
        mailer.send("alice@example.com", "Hello", "Body")
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "no-reply@localhost",
        use_tls: bool = True,
        timeout_seconds: int = 10,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds

    def send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            # OSError covers refused connections and socket timeouts
            raise MailDeliveryError(f"SMTP delivery via {self.host}:{self.port} failed") from exc


class ConsoleMailer:
    """Development mailer: writes the message to the log instead of sending it."""

    def send(self, to: str, subject: str, body: str) -> None:
        logger.info("Mail to %s -- %s\n%s", to, subject, body)


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def _link(base_url: str, path: str, token: str) -> str:
    return f"{base_url.rstrip('/')}{path}?{urlencode({'token': token})}"


def verification_message(base_url: str, name: str, token: str, expire_hours: int) -> tuple[str, str]:
    """Return (subject, body) for the email-verification mail."""
    url = _link(base_url, "/api/v1/auth/verify_email", token)
    body = (
        f"Hi {name},\n\n"
        "Please confirm your email address by opening the link below:\n\n"
        f"{url}\n\n"
        f"This link expires in {expire_hours} hours. "
        "If you did not create an account, you can ignore this message.\n"
    )
    return "Verify your email address", body


def reset_message(base_url: str, name: str, token: str, expire_minutes: int) -> tuple[str, str]:
    """Return (subject, body) for the password-reset mail."""
    url = _link(base_url, "/reset-password", token)
    body = (
        f"Hi {name},\n\n"
        "We received a request to reset your password. Open the link below to choose a new one:\n\n"
        f"{url}\n\n"
        f"This link expires in {expire_minutes} minutes and stops working once your password changes. "
        "If you did not ask for a reset, you can ignore this message.\n"
    )
    return "Reset your password", body
