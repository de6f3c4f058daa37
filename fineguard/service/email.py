from __future__ import annotations

import smtplib
import ssl
from contextlib import contextmanager
from email.message import EmailMessage
from typing import Iterator, Optional
from urllib.parse import quote

from fineguard.config import Settings
from fineguard.logging import get_logger, hash_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 32px 20px;">
    <h1>{heading}</h1>
    <p>{intro}</p>
    {action}
    <p>{footnote}</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""

_ACTION_TEMPLATE = """<p style="margin: 30px 0;"><a href="{url}" style="background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none;">{label}</a></p>
    <p>If the button doesn't work, open this address in your browser: {url}</p>"""

# SMTP failure class -> log event name
_SMTP_FAILURES = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_connect_failed"),
    (OSError, "email_connect_failed"),
)


class EmailService:
    """Transactional mail for the account security flows.

    Reset and verification links are built from ``base_url``. Without an SMTP
    host the service runs in dev mode: sends are logged (subject and hashed
    recipient only) and reported as delivered.
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
        from_name: str = "Las Pinas Traffic Portal",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.sender_address = from_email or smtp_user
        self.sender_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

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
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender_address)

    @contextmanager
    def _smtp(self) -> Iterator[smtplib.SMTP]:
        """Open an authenticated SMTP session (STARTTLS or implicit TLS)."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server: smtplib.SMTP = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            yield server

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.sender_name} <{self.sender_address}>"
        message["To"] = to_email
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Deliver one message; False when SMTP refuses or is unreachable."""
        recipient = hash_email(to_email)
        if not self.is_configured:
            # Bodies carry live reset links, so only the envelope is logged
            logger.info("email_dev_mode", email_hash=recipient, subject=subject)
            return True

        message = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._smtp() as server:
                server.send_message(message)
        except Exception as exc:
            event = next(
                (name for kind, name in _SMTP_FAILURES if isinstance(exc, kind)), None
            )
            if event is None:
                raise
            logger.error(
                event,
                email_hash=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", email_hash=recipient, subject=subject)
        return True

    def _render(
        self,
        heading: str,
        intro: str,
        footnote: str,
        *,
        url: Optional[str] = None,
        label: str = "",
    ) -> tuple[str, str]:
        action = _ACTION_TEMPLATE.format(url=url, label=label) if url else ""
        html_body = _HTML_TEMPLATE.format(
            heading=heading,
            intro=intro,
            action=action,
            footnote=footnote,
            sender=self.sender_name,
        )
        link = f"\n{url}\n" if url else ""
        text_body = f"{heading}\n\n{intro}\n{link}\n{footnote}\n\n---\n{self.sender_name}\n"
        return html_body, text_body

    def send_password_reset(self, to_email: str, token: str, *, expires_minutes: int) -> bool:
        """Mail a reset link; the quoted lifetime is the token's actual TTL."""
        reset_url = f"{self.base_url}/reset-password?token={quote(token)}"
        html_body, text_body = self._render(
            "Reset your password",
            "We received a request to reset the password of your traffic portal account.",
            f"This link will expire in {expires_minutes} minutes. "
            "If you didn't request this, you can safely ignore this email.",
            url=reset_url,
            label="Reset Password",
        )
        return self._send_email(to_email, "Password reset request", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str, *, expires_minutes: int) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={quote(token)}"
        hours = max(1, expires_minutes // 60)
        html_body, text_body = self._render(
            "Verify your email",
            "Please confirm the email address of your traffic portal account.",
            f"This link will expire in {hours} hours.",
            url=verify_url,
            label="Verify Email",
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_second_factor_changed(self, to_email: str, *, enabled: bool) -> bool:
        """Tell the account owner that two-factor authentication was switched."""
        state = "enabled" if enabled else "disabled"
        html_body, text_body = self._render(
            f"Two-factor authentication {state}",
            f"Two-factor authentication has been {state} on your traffic portal account.",
            "If you didn't make this change, please contact the City Traffic Office immediately.",
        )
        return self._send_email(
            to_email, f"Two-factor authentication {state}", html_body, text_body
        )
