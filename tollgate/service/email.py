from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tollgate.logging import get_logger

logger = get_logger(__name__)


class LockoutNotifier:
    """Tells account owners when repeated failed logins locked them out.

    Sends over SMTP (STARTTLS or implicit TLS) and falls back to logging the
    message when SMTP is not configured.
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
        from_name: str = "Tollgate",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent (or logged in dev mode), False otherwise.
        """
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

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
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_account_locked(
        self,
        to_email: str,
        *,
        locked_at: datetime,
        lockout_minutes: int,
        ip_addr: Optional[str] = None,
    ) -> bool:
        reset_url = f"{self.base_url}/password/reset"
        when = locked_at.strftime("%Y-%m-%d %H:%M:%S UTC")
        source = ip_addr or "unknown"
        subject = "Your account has been temporarily locked"

        text_body = f"""Your account was temporarily locked after too many failed sign-in attempts.

Time: {when}
IP address: {source}
Lockout duration: {lockout_minutes} minutes

If this was you, wait for the lockout to end and try again.
If it was not, reset your password: {reset_url}
"""
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <h2>Account temporarily locked</h2>
    <p>Your account was locked after too many failed sign-in attempts.</p>
    <ul>
        <li>Time: {html.escape(when)}</li>
        <li>IP address: {html.escape(source)}</li>
        <li>Lockout duration: {lockout_minutes} minutes</li>
    </ul>
    <p>If this was not you, <a href="{html.escape(reset_url)}">reset your password</a>.</p>
</body>
</html>
"""
        return self._send_email(to_email, subject, html_body, text_body)
