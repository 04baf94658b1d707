from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Protocol

import httpx

from mailgate.config import EmailProvider, Settings
from mailgate.logging import get_logger, mask_email

logger = get_logger(__name__)


class EmailSender(Protocol):
    def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool: ...


@dataclass
class LoginCodeMessage:
    subject: str
    html_body: str
    text_body: str


def build_login_code_message(
    code: str, expires_in_minutes: int, app_name: str = "Mailgate"
) -> LoginCodeMessage:
    """Render the login-code email."""
    subject = "Your login code"

    html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; font-family: monospace; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Your login code</h1>
        <p>Use the code below to sign in to {app_name}:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {expires_in_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{app_name}</p>
        </div>
    </div>
</body>
</html>
"""

    text_body = f"""Your {app_name} login code

Use the code below to sign in:

{code}

This code will expire in {expires_in_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{app_name}
"""
    return LoginCodeMessage(subject=subject, html_body=html_body, text_body=text_body)


class SmtpEmailSender:
    """Deliver mail over SMTP with STARTTLS or implicit TLS."""

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Mailgate",
        timeout: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        try:
            msg = self._build_message(to_email, subject, html_body, text_body)
            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=mask_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=mask_email(to_email), subject=subject, provider="smtp")
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                user=self.smtp_user,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_network_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


class SendGridEmailSender:
    """Deliver mail through the SendGrid v3 HTTP API."""

    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        from_name: str = "Mailgate",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self._transport = transport

    def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool:
        content = []
        if text_body:
            content.append({"type": "text/plain", "value": text_body})
        content.append({"type": "text/html", "value": html_body})
        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": content,
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_provider_rejected",
                to=mask_email(to_email),
                provider="sendgrid",
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "email_provider_unreachable",
                to=mask_email(to_email),
                provider="sendgrid",
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=mask_email(to_email), subject=subject, provider="sendgrid")
        return True


class LogEmailSender:
    """Dev mode: log the email instead of sending it."""

    def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool:
        logger.info(
            "email_dev_mode",
            to=mask_email(to_email),
            subject=subject,
            body_chars=len(text_body or html_body),
        )
        return True


@dataclass
class SentEmail:
    to_email: str
    subject: str
    html_body: str
    text_body: Optional[str]


class MockEmailSender:
    """Records outgoing mail in memory; ``fail_next`` simulates a delivery failure."""

    def __init__(self) -> None:
        self.outbox: List[SentEmail] = []
        self.fail_next = False

    def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool:
        if self.fail_next:
            self.fail_next = False
            logger.warning("email_mock_failure", to=mask_email(to_email))
            return False
        self.outbox.append(SentEmail(to_email, subject, html_body, text_body))
        return True

    def last_to(self, to_email: str) -> Optional[SentEmail]:
        for sent in reversed(self.outbox):
            if sent.to_email == to_email:
                return sent
        return None

    def clear(self) -> None:
        self.outbox.clear()


def build_email_sender(settings: Settings) -> EmailSender:
    """Select the single delivery implementation for this process."""
    provider = EmailProvider(settings.email_provider)
    if provider == EmailProvider.SMTP:
        if not settings.smtp_host or not (settings.email_from_address or settings.smtp_user):
            raise ValueError("SMTP provider requires SMTP_HOST and EMAIL_FROM_ADDRESS")
        return SmtpEmailSender(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    if provider == EmailProvider.SENDGRID:
        if not settings.sendgrid_api_key or not settings.email_from_address:
            raise ValueError("SendGrid provider requires SENDGRID_API_KEY and EMAIL_FROM_ADDRESS")
        return SendGridEmailSender(
            api_key=settings.sendgrid_api_key,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    if provider == EmailProvider.MOCK:
        return MockEmailSender()
    return LogEmailSender()
