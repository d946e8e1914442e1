"""
auth/outbound.py -- Email and in-app notification collaborators.

Mailer accepts a rendered OutboundEmail and a recipient and reports whether
delivery succeeded. SmtpMailer talks to a real relay; LogMailer is the
development fallback used when SMTP_HOST is empty (it logs the subject and a
redacted recipient, never the body, since bodies carry codes and links).

Notifier records an in-app notification for a user. Notification storage
belongs to the reporting side of the portal; LogNotifier is the default
implementation and keeps the contract visible in the logs.

Templates are plain functions returning OutboundEmail so callers never build
message text inline.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Protocol

from core.config import Settings

logger = logging.getLogger("coopportal.outbound")

ORG_NAME = "IMVCMPC"


@dataclass(frozen=True)
class OutboundEmail:
    subject: str
    text_body: str
    html_body: str


class Mailer(Protocol):
    def send(self, to_email: str, message: OutboundEmail) -> bool: ...


class Notifier(Protocol):
    def notify(self, user_id: int, title: str, message: str, category: str = "system") -> None: ...


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


# ---------------------------------------------------------------------------
# Mailers
# ---------------------------------------------------------------------------


class LogMailer:
    """Development mailer: logs the send, delivers nothing."""

    def send(self, to_email: str, message: OutboundEmail) -> bool:
        logger.info("Email (dev mode) to=%s subject=%r", redact_email(to_email), message.subject)
        return True


class SmtpMailer:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str,
        from_name: str = ORG_NAME,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email
        self.from_name = from_name

    def send(self, to_email: str, message: OutboundEmail) -> bool:
        """Send via SMTP. Returns False on any delivery failure (logged, not raised)."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=30) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Email delivery failed to=%s host=%s error=%s: %s",
                redact_email(to_email),
                self.host,
                type(exc).__name__,
                exc,
            )
            return False
        logger.info("Email sent to=%s subject=%r", redact_email(to_email), message.subject)
        return True


def build_mailer(settings: Settings) -> Mailer:
    if not settings.smtp_host:
        logger.warning("SMTP_HOST not set -- outbound email will be logged, not delivered")
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_email=settings.mail_from,
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class LogNotifier:
    def notify(self, user_id: int, title: str, message: str, category: str = "system") -> None:
        logger.info("Notification user_id=%s category=%s title=%r", user_id, category, title)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _html(paragraphs: list[str]) -> str:
    body = "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
    return f'<!DOCTYPE html><html><body style="font-family: Arial, sans-serif;">{body}</body></html>'


def _render(subject: str, paragraphs: list[str]) -> OutboundEmail:
    return OutboundEmail(subject=subject, text_body="\n\n".join(paragraphs), html_body=_html(paragraphs))


def password_reset_email(name: str, reset_url: str, ttl_minutes: int) -> OutboundEmail:
    return _render(
        f"{ORG_NAME} - Password Reset Request",
        [
            f"Hello {name},",
            "We received a request to reset the password for your account.",
            f"Reset your password here: {reset_url}",
            f"This link expires in {ttl_minutes} minutes. If you did not request a reset, ignore this email.",
        ],
    )


def reactivation_code_email(name: str, code: str, ttl_minutes: int) -> OutboundEmail:
    return _render(
        f"{ORG_NAME} - Account Reactivation Verification Code",
        [
            f"Hello {name},",
            f"Your account reactivation verification code is: {code}",
            f"The code expires in {ttl_minutes} minutes. Requesting a new code cancels this one.",
        ],
    )


def reactivation_decision_email(name: str, approved: bool, notes: str | None) -> OutboundEmail:
    if approved:
        subject = f"{ORG_NAME} - Account Reactivation Approved"
        lines = [f"Hello {name},", "Your account reactivation request has been approved. You can log in again."]
    else:
        subject = f"{ORG_NAME} - Account Reactivation Request Rejected"
        lines = [f"Hello {name},", "Your account reactivation request has been rejected."]
    if notes:
        lines.append(f"Administrator notes: {notes}")
    return _render(subject, lines)
