from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Protocol

from vendorportal.config import Settings
from vendorportal.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    """Outbound account notifications. Implementations report success as a bool."""

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_two_factor_enabled(self, to_email: str) -> bool: ...

    def send_password_changed(self, to_email: str) -> bool: ...


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {paragraphs}
        {action}
        <div class="footer">
            <p>{sender}</p>
            {link_hint}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP delivery for account emails.

    Without an SMTP host the message is logged instead of sent, which keeps
    local development and tests free of a mail server.
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
        from_name: str = "Elika Vendor Portal",
        frontend_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:3000").rstrip("/")

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
            frontend_url=settings.frontend_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        heading: str,
        paragraphs: list[str],
        *,
        action_label: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> tuple[str, str]:
        """Build the HTML and plain-text bodies for one message."""
        action = ""
        link_hint = ""
        if action_url:
            safe_url = escape(action_url, quote=True)
            action = f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{escape(action_label or "Open")}</a></p>'
            link_hint = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
        html_body = _HTML_TEMPLATE.format(
            heading=escape(heading),
            paragraphs="\n        ".join(f"<p>{escape(p)}</p>" for p in paragraphs),
            action=action,
            sender=escape(self.from_name),
            link_hint=link_hint,
        )
        text_lines = [heading, ""]
        for paragraph in paragraphs:
            text_lines.extend([paragraph, ""])
        if action_url:
            text_lines.extend([action_url, ""])
        text_lines.extend(["---", self.from_name, ""])
        return html_body, "\n".join(text_lines)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # connection refused, DNS failure, timeout
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.frontend_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Welcome to the Elika Vendor Portal. Please confirm your email address to activate your account.",
                "This link will expire in 24 hours.",
            ],
            action_label="Verify Email",
            action_url=verify_url,
        )
        return self._send_email(to_email, "Verify your Elika Vendor Portal email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.frontend_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                "This link will expire in 1 hour.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_label="Reset Password",
            action_url=reset_url,
        )
        return self._send_email(to_email, "Reset your Elika Vendor Portal password", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication is now active on your Elika Vendor Portal account.",
                "You will need a code from your authenticator app, or one of your backup codes, when signing in.",
                "If you didn't make this change, contact your administrator immediately.",
            ],
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your Elika Vendor Portal account was just changed and all sessions were signed out.",
                "If you didn't make this change, reset your password and contact your administrator.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)
