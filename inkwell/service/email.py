from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional

from inkwell.config import Settings
from inkwell.logging import get_logger

logger = get_logger(__name__)

OTP_SUBJECT = "Your OTP Code"


class EmailDeliveryError(Exception):
    """Raised when an outbound message could not be handed to the SMTP server."""


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Plain-text transactional mail over SMTP.

    Without an SMTP host and sender address the message is logged, not sent.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Inkwell",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.email_send_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, subject: str, body: str) -> None:
        """Send a plain-text message, raising EmailDeliveryError on failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to),
                subject=subject,
                body_length=len(body),
            )
            return

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to], msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(to),
                host=self.smtp_host,
                error_code=exc.smtp_code,
            )
            raise EmailDeliveryError("smtp authentication failed") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to),
                refused=len(exc.recipients),
            )
            raise EmailDeliveryError("recipient refused") from exc
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise EmailDeliveryError(str(exc)) from exc

        logger.info("email_sent", to=redact_email(to), subject=subject)

    def send_otp(self, to: str, otp: str) -> None:
        self.send(to, OTP_SUBJECT, f"Your OTP: {otp}")
