from __future__ import annotations

import logging
import os
import secrets
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    """Raised when the SMTP server cannot deliver a message."""


@dataclass(frozen=True)
class SMTPSettings:
    host: str | None
    port: int
    user: str | None
    password: str | None
    sender: str | None
    base_url: str

    @classmethod
    def from_env(cls) -> "SMTPSettings":
        raw_port = os.getenv("EMAIL_SERVER_PORT", "587")
        try:
            port = int(raw_port)
        except ValueError:
            port = 587
        return cls(
            host=os.getenv("EMAIL_SERVER_HOST"),
            port=port,
            user=os.getenv("EMAIL_SERVER_USER"),
            password=os.getenv("EMAIL_SERVER_PASSWORD"),
            sender=os.getenv("EMAIL_FROM"),
            base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.sender)


def generate_verification_token() -> str:
    return secrets.token_hex(32)


def verification_url(settings: SMTPSettings, token: str) -> str:
    return f"{settings.base_url}/auth/verify-email?token={token}"


def send_email(settings: SMTPSettings, recipient: str, subject: str, body: str) -> bool:
    """Send a plain-text message; returns False when email is not configured."""
    if not settings.configured:
        logger.warning("Email service not configured, skipping '%s' to %s", subject, recipient)
        return False

    message = EmailMessage()
    message["From"] = settings.sender
    message["To"] = recipient
    message["Subject"] = subject
    message.set_content(body)

    try:
        if settings.port == 465:
            with smtplib.SMTP_SSL(settings.host, settings.port, timeout=30) as client:
                client.login(settings.user, settings.password)
                client.send_message(message)
        else:
            with smtplib.SMTP(settings.host, settings.port, timeout=30) as client:
                client.starttls()
                client.login(settings.user, settings.password)
                client.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        raise EmailDeliveryError(f"Failed to send '{subject}' to {recipient}") from exc
    return True


def send_verification_email(
    settings: SMTPSettings,
    recipient: str,
    name: str | None,
    token: str,
    ttl_hours: int = 24,
) -> bool:
    greeting = f"Hello {name}," if name else "Hello,"
    body = (
        f"{greeting}\n\n"
        "Thanks for signing up. Confirm your email address by opening the link below:\n\n"
        f"{verification_url(settings, token)}\n\n"
        f"The link expires in {ttl_hours} hours. If you did not create an account, ignore this email.\n"
    )
    return send_email(settings, recipient, "Verify your email address", body)


def send_welcome_email(settings: SMTPSettings, recipient: str, name: str | None) -> bool:
    greeting = f"Welcome {name}!" if name else "Welcome!"
    body = (
        f"{greeting}\n\n"
        "Your email address is verified. You can now sign in and start tracking "
        "your accounts, transactions, budgets and goals.\n\n"
        f"{settings.base_url}/auth/signin\n"
    )
    return send_email(settings, recipient, "Welcome to your money manager", body)
