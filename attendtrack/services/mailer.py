from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

from attendtrack.settings import Settings, get_public_base_url, get_settings

logger = logging.getLogger("attendtrack.mailer")


@dataclass(frozen=True, slots=True)
class MailMessage:
    recipients: list[str]
    subject: str
    body: str


class SmtpChannel:
    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.smtp_host = (settings.smtp_host or "").strip()
        self.smtp_port = int(settings.smtp_port)
        self.smtp_user = (settings.smtp_user or "").strip()
        self.smtp_pass = settings.smtp_pass or ""
        self.smtp_from = (settings.smtp_from or "").strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: MailMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not recipients:
            return {"mode": "skipped_no_recipients", "sent": 0}

        if not self.configured:
            # Body may carry a one-time secret and is never logged.
            logger.info(
                "email_channel_not_configured",
                extra={"subject": message.subject, "recipient_count": len(recipients)},
            )
            return {"mode": "not_configured", "sent": 0}

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients)}

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "configured": self.configured,
            "smtp_user_set": bool(self.smtp_user),
            "smtp_use_tls": self.smtp_use_tls,
            "missing_fields": missing_fields,
        }


def build_reset_message(*, email: str, name: str, raw_token: str, expires_minutes: int) -> MailMessage:
    link = f"{get_public_base_url()}/reset-password?token={raw_token}"
    body = (
        f"Hello {name},\n\n"
        "A password reset was requested for your account.\n"
        f"Use the link below within {expires_minutes} minutes:\n\n"
        f"{link}\n\n"
        "If you did not request this, you can ignore this message."
    )
    return MailMessage(recipients=[email], subject="Password reset", body=body)


def send_password_reset(*, email: str, name: str, raw_token: str, expires_minutes: int) -> dict[str, Any]:
    message = build_reset_message(email=email, name=name, raw_token=raw_token, expires_minutes=expires_minutes)
    try:
        return SmtpChannel().send(message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.exception("password_reset_email_failed", extra={"recipient_count": 1})
        return {"mode": "send_exception", "sent": 0, "error": exc.__class__.__name__}
