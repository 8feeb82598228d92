from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

from zajel_auth.logging import get_logger

logger = get_logger(__name__)

_STYLE = (
    "body { font-family: Tahoma, Arial, sans-serif; line-height: 1.6; color: #222; }"
    " .container { max-width: 560px; margin: 0 auto; padding: 32px 20px; }"
    " .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; color: #b8860b; }"
    " .button { display: inline-block; background: #b8860b; color: #fff; padding: 12px 24px;"
    " border-radius: 6px; text-decoration: none; font-weight: 600; }"
    " .footer { margin-top: 36px; font-size: 12px; color: #666; }"
)


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional mail for the auth flows.

    Sends over SMTP (STARTTLS or implicit TLS). When SMTP is not configured the
    message is logged instead, which is how local development works.
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
        from_name: str = "Zajel Alsaadaaa",
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

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        title: str,
        paragraphs: Sequence[str],
        *,
        code: Optional[str] = None,
        link: Optional[tuple[str, str]] = None,
    ) -> tuple[str, str]:
        """Build (html, text) bodies from plain paragraphs."""
        html_parts = [f"<h1>{html.escape(title)}</h1>"]
        text_parts = [title, ""]
        for paragraph in paragraphs:
            html_parts.append(f"<p>{html.escape(paragraph)}</p>")
            text_parts.extend([paragraph, ""])
        if code:
            html_parts.append(f'<p class="code">{html.escape(code)}</p>')
            text_parts.extend([code, ""])
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            html_parts.append(f'<p><a href="{safe_url}" class="button">{html.escape(label)}</a></p>')
            html_parts.append(f'<p class="footer">{safe_url}</p>')
            text_parts.extend([url, ""])
        html_parts.append(f'<div class="footer"><p>{html.escape(self.from_name)}</p></div>')
        text_parts.extend(["---", self.from_name])
        body = (
            '<!DOCTYPE html><html><head><meta charset="utf-8">'
            f"<style>{_STYLE}</style></head><body>"
            f'<div class="container">{"".join(html_parts)}</div></body></html>'
        )
        return body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message. Returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            else:
                server = smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                )
            with server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                status_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(getattr(exc, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            # Covers refused connections and timeouts
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_verification_code(self, to_email: str, name: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Confirm your email",
            [
                f"Hello {name},",
                "Use the code below to confirm your email address and activate your account.",
            ],
            code=code,
        )
        return self._send_email(to_email, "Your verification code", html_body, text_body)

    def send_password_reset(self, to_email: str, name: str, reset_url: str, ttl_minutes: int) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hello {name},",
                "We received a request to reset your password.",
                f"The link expires in {ttl_minutes} minutes. If you did not ask for this, ignore this email.",
            ],
            link=("Reset password", reset_url),
        )
        return self._send_email(to_email, "Password reset", html_body, text_body)

    def send_email_change_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._render(
            "Confirm your new email",
            ["Enter this code in your account settings to confirm the new address."],
            code=code,
        )
        return self._send_email(to_email, "Confirm your new email", html_body, text_body)

    def send_account_deleted(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            "Your account was deleted",
            [
                f"Hello {name},",
                "Your account and its personal data have been removed.",
                "If you did not request this, contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Account deleted", html_body, text_body)
