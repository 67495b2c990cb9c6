from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Optional, Tuple

from useraccess.logging import get_logger, redact_email

logger = get_logger(__name__)

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RECOVERY = "password_recovery"

SMTP_TIMEOUT_SECONDS = 30

# purpose -> (subject, heading, intro line)
_OTP_TEMPLATES: Dict[str, Tuple[str, str, str]] = {
    EMAIL_VERIFICATION: (
        "Your email verification code",
        "Verify your email",
        "Use the code below to confirm your email address:",
    ),
    PASSWORD_RECOVERY: (
        "Your password reset code",
        "Reset your password",
        "We received a request to reset your password. Use the code below to choose a new one:",
    ),
}


def _failure_event(exc: Exception) -> str:
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return "email_auth_failed"
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return "email_recipient_refused"
    if isinstance(exc, smtplib.SMTPException):
        return "email_smtp_error"
    return "email_connect_failed"


class EmailService:
    """Email service for OTP delivery.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Verification and password-recovery passcodes
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Vendo Accounts",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message

    def _open_connection(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
        )

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        """Send one message; returns False (after logging) on any SMTP or socket failure."""
        recipient = redact_email(to_email)
        if not self.is_configured:
            # No SMTP server: surface the message in the logs instead
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        message = self._build_message(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        try:
            with self._open_connection(context) as server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                _failure_event(exc),
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                smtp_code=getattr(exc, "smtp_code", None),
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def send_otp(self, to_email: str, otp: str, purpose: str) -> bool:
        """Send a one-time passcode for ``purpose`` (verification or recovery)."""
        try:
            subject, heading, intro = _OTP_TEMPLATES[purpose]
        except KeyError:
            raise ValueError(f"unknown OTP purpose: {purpose}")

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p class="code">{otp}</p>
        <p>The code expires shortly and can be used once.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{heading}

{intro}

{otp}

The code expires shortly and can be used once.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""

        return self._send_email(to_email, subject, html_body, text_body)
