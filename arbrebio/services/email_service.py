"""Email service with template rendering and provider abstraction."""
import asyncio
import base64
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Optional, Sequence
from urllib.parse import quote

import aiosmtplib
import httpx
import resend
from resend.exceptions import ResendError
from jinja2 import Environment, FileSystemLoader, select_autoescape
from jinja2.exceptions import TemplateError

from arbrebio.config import get_settings

logger = logging.getLogger(__name__)


def _redact_email(email: str) -> str:
    """Redact email address for safe logging (e.g., u***@example.com)."""
    try:
        local, domain = email.split("@")
        return f"{local[0]}***@{domain}" if local else f"***@{domain}"
    except (ValueError, IndexError):
        return "***"


TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "emails"

# Values shipped in .env.example; treated as "not configured"
_PLACEHOLDER_MARKERS = ("your_", "placeholder")


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"


class TemplateRenderer:
    """Jinja2 template renderer for email templates."""

    def __init__(self):
        self._env: Optional[Environment] = None

    def _get_env(self) -> Environment:
        if self._env is None:
            if TEMPLATE_DIR.exists():
                self._env = Environment(
                    loader=FileSystemLoader(str(TEMPLATE_DIR)),
                    autoescape=select_autoescape(['html', 'xml']),
                )
            else:
                logger.warning(f"Email template directory not found: {TEMPLATE_DIR}")
                self._env = Environment(autoescape=select_autoescape(['html', 'xml']))
        return self._env

    def render(self, template_name: str, **context) -> str:
        try:
            template = self._get_env().get_template(template_name)
            return template.render(**context)
        except TemplateError as e:
            logger.error(f"Failed to render template {template_name}: {e}")
            return f"Error rendering email template: {template_name}"


template_renderer = TemplateRenderer()


class EmailProvider(ABC):
    """Abstract base class for email providers."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        reply_to: Optional[str] = None,
        attachments: Optional[Sequence[EmailAttachment]] = None,
    ) -> bool:
        """Send an email. Returns True if successful."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the provider has the credentials it needs."""

    async def close(self) -> None:
        """Release pooled connections held by the provider."""


def _sender() -> str:
    settings = get_settings()
    return f"{settings.email_from_name} <{settings.email_from_address}>"


def _is_real_secret(value: str) -> bool:
    return bool(value) and not any(marker in value for marker in _PLACEHOLDER_MARKERS)


class SMTPProvider(EmailProvider):
    """SMTP email provider using aiosmtplib."""

    def is_configured(self) -> bool:
        return bool(get_settings().smtp_host)

    async def send(self, to, subject, html, text, reply_to=None, attachments=None) -> bool:
        settings = get_settings()
        redacted = _redact_email(to)
        logger.info(f"SMTP: attempting to send email to {redacted}, subject='{subject}'")
        try:
            body = MIMEMultipart("alternative")
            body.attach(MIMEText(text, "plain"))
            body.attach(MIMEText(html, "html"))

            if attachments:
                msg = MIMEMultipart("mixed")
                msg.attach(body)
                for attachment in attachments:
                    part = MIMEApplication(attachment.content, Name=attachment.filename)
                    part.set_type(attachment.mime_type)
                    part["Content-Disposition"] = f'attachment; filename="{attachment.filename}"'
                    msg.attach(part)
            else:
                msg = body

            msg["Subject"] = subject
            msg["From"] = _sender()
            msg["To"] = to
            if reply_to:
                msg["Reply-To"] = reply_to

            await aiosmtplib.send(
                msg,
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_user if settings.smtp_user else None,
                password=settings.smtp_password if settings.smtp_password else None,
                start_tls=settings.smtp_use_tls,
            )
            logger.info(f"SMTP: email sent successfully to {redacted}")
            return True
        except aiosmtplib.SMTPConnectError as e:
            logger.error(
                f"SMTP connection failed for {redacted}: host={settings.smtp_host}, "
                f"port={settings.smtp_port}, error={e}"
            )
            return False
        except aiosmtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed for {redacted}: {e}")
            return False
        except aiosmtplib.SMTPResponseException as e:
            logger.error(f"SMTP error for {redacted}: code={e.code}, message={e.message}")
            return False
        except (aiosmtplib.SMTPException, smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP: unexpected error sending to {redacted}: {type(e).__name__}: {e}")
            return False


class ResendProvider(EmailProvider):
    """Resend API email provider."""

    def is_configured(self) -> bool:
        return _is_real_secret(get_settings().resend_api_key)

    async def send(self, to, subject, html, text, reply_to=None, attachments=None) -> bool:
        settings = get_settings()
        redacted = _redact_email(to)
        logger.info(f"Resend: attempting to send email to {redacted}, subject='{subject}'")
        resend.api_key = settings.resend_api_key

        params: dict[str, Any] = {
            "from": _sender(),
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        if reply_to:
            params["reply_to"] = reply_to
        if attachments:
            params["attachments"] = [
                {"filename": a.filename, "content": list(a.content)} for a in attachments
            ]

        try:
            # The SDK is synchronous
            await asyncio.to_thread(resend.Emails.send, params)
            logger.info(f"Resend: email sent successfully to {redacted}")
            return True
        except (ResendError, OSError, ValueError) as e:
            logger.error(f"Resend: failed to send email to {redacted}: {type(e).__name__}: {e}")
            return False


class SendGridProvider(EmailProvider):
    """SendGrid v3 Web API provider."""

    def __init__(self):
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        # Shared by every concurrent send in a newsletter batch
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=get_settings().email_http_timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def is_configured(self) -> bool:
        return _is_real_secret(get_settings().sendgrid_api_key)

    def _payload(self, to, subject, html, text, reply_to, attachments) -> dict[str, Any]:
        settings = get_settings()
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": settings.email_from_address, "name": settings.email_from_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html},
            ],
            "tracking_settings": {
                "click_tracking": {"enable": False},
                "open_tracking": {"enable": True},
            },
        }
        if reply_to:
            payload["reply_to"] = {"email": reply_to}
        if attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(a.content).decode("ascii"),
                    "filename": a.filename,
                    "type": a.mime_type,
                    "disposition": "attachment",
                }
                for a in attachments
            ]
        return payload

    async def send(self, to, subject, html, text, reply_to=None, attachments=None) -> bool:
        settings = get_settings()
        redacted = _redact_email(to)
        logger.info(f"SendGrid: attempting to send email to {redacted}, subject='{subject}'")
        try:
            response = await self._get_client().post(
                settings.sendgrid_api_url,
                json=self._payload(to, subject, html, text, reply_to, attachments),
                headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
            )
            response.raise_for_status()
            logger.info(f"SendGrid: email sent successfully to {redacted}")
            return True
        except httpx.HTTPStatusError as e:
            logger.error(
                f"SendGrid: rejected email to {redacted}: status={e.response.status_code}, body={e.response.text[:200]}"
            )
            return False
        except httpx.HTTPError as e:
            logger.error(f"SendGrid: failed to send email to {redacted}: {type(e).__name__}: {e}")
            return False


class EmailService:
    """Transactional email for the newsletter and the visitor forms."""

    def __init__(self):
        self._provider: Optional[EmailProvider] = None

    def _get_provider(self) -> Optional[EmailProvider]:
        """Lazy load the email provider based on settings."""
        if self._provider is None:
            settings = get_settings()
            if settings.email_provider == "smtp":
                self._provider = SMTPProvider()
            elif settings.email_provider == "resend":
                self._provider = ResendProvider()
            elif settings.email_provider == "sendgrid":
                self._provider = SendGridProvider()
            else:
                logger.warning(f"Unknown email provider: {settings.email_provider}")
        return self._provider

    def is_configured(self) -> bool:
        """True when email is enabled and the selected provider has credentials."""
        if not get_settings().email_enabled:
            return False
        provider = self._get_provider()
        return provider is not None and provider.is_configured()

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()

    def _base_context(self) -> dict[str, Any]:
        settings = get_settings()
        return {
            "site_name": settings.site_name,
            "site_url": settings.site_url.rstrip("/"),
            "admin_email": settings.admin_email,
        }

    def build_link(self, path: str, **params: str) -> str:
        """Build an absolute site URL with url-encoded query parameters."""
        base_url = get_settings().site_url.rstrip("/")
        query = "&".join(f"{key}={quote(str(value), safe='')}" for key, value in params.items())
        return f"{base_url}/{path.lstrip('/')}" + (f"?{query}" if query else "")

    async def _deliver(
        self,
        to: str,
        subject: str,
        template: str,
        context: dict[str, Any],
        reply_to: Optional[str] = None,
        attachments: Optional[Sequence[EmailAttachment]] = None,
    ) -> bool:
        if not get_settings().email_enabled:
            logger.info(f"Email disabled - would send {template} to {_redact_email(to)}")
            return False

        provider = self._get_provider()
        if not provider:
            logger.warning("No email provider configured")
            return False

        full_context = {**self._base_context(), **context}
        html = template_renderer.render(f"{template}.html", **full_context)
        text = template_renderer.render(f"{template}.txt", **full_context)

        return await provider.send(
            to=to,
            subject=subject,
            html=html,
            text=text,
            reply_to=reply_to,
            attachments=attachments,
        )

    # Newsletter lifecycle

    async def send_confirmation(self, subscriber) -> bool:
        """Ask a pending subscriber to confirm their address."""
        confirm_link = self.build_link("newsletter/confirm", token=subscriber.confirmation_token)
        return await self._deliver(
            subscriber.email,
            f"Confirm Your Subscription to {get_settings().site_name}",
            "newsletter_confirm",
            {
                "name": subscriber.full_name,
                "email": subscriber.email,
                "confirm_link": confirm_link,
            },
        )

    async def notify_admin_new_subscriber(self, subscriber) -> bool:
        return await self._deliver(
            get_settings().admin_email,
            "New Newsletter Subscriber",
            "newsletter_admin_new",
            {
                "name": subscriber.full_name,
                "email": subscriber.email,
                "source": subscriber.source,
                "date": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            },
        )

    async def send_welcome(self, subscriber, unsubscribe_link: str) -> bool:
        """Welcome a confirmed subscriber; the admin mailbox receives a copy."""
        subject = f"Welcome to {get_settings().site_name}'s Community"
        context = {
            "name": subscriber.full_name,
            "email": subscriber.email,
            "unsubscribe_link": unsubscribe_link,
        }
        delivered = await self._deliver(subscriber.email, subject, "newsletter_welcome", context)
        await self._deliver(get_settings().admin_email, f"[COPY] {subject}", "newsletter_welcome", context)
        return delivered

    async def notify_admin_unsubscribe(self, subscriber) -> bool:
        return await self._deliver(
            get_settings().admin_email,
            "Newsletter Unsubscription",
            "newsletter_admin_unsubscribe",
            {
                "name": subscriber.full_name,
                "email": subscriber.email,
                "date": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            },
        )

    # Newsletter issues

    async def send_newsletter(
        self,
        to: str,
        name: Optional[str],
        subject: str,
        content: str,
        unsubscribe_link: Optional[str] = None,
    ) -> bool:
        return await self._deliver(
            to,
            subject,
            "newsletter_issue",
            {
                "name": name,
                "email": to,
                "content": content,
                "unsubscribe_link": unsubscribe_link,
            },
        )

    async def send_newsletter_copy(self, subject: str, content: str, prefix: str = "[COPY]") -> bool:
        """Send an issue to the admin mailbox only, e.g. a test or archive copy."""
        return await self.send_newsletter(
            get_settings().admin_email,
            "Admin",
            f"{prefix} {subject}",
            content,
        )

    async def send_export(self, csv_content: str, count: int) -> bool:
        """Mail the subscriber CSV export to the admin mailbox."""
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        attachment = EmailAttachment(
            filename=f"newsletter-subscribers-{date}.csv",
            content=csv_content.encode("utf-8"),
            mime_type="text/csv",
        )
        return await self._deliver(
            get_settings().admin_email,
            f"Newsletter Subscribers Export - {date}",
            "newsletter_export",
            {"count": count, "date": date},
            attachments=[attachment],
        )

    # Visitor forms

    async def send_contact_notification(self, form: dict[str, Any], client_ip: str) -> bool:
        return await self._deliver(
            get_settings().admin_email,
            f"New Contact Form Submission: {form['interest']}",
            "contact_notification",
            {
                "form": form,
                "client_ip": client_ip,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            reply_to=form["email"],
        )

    async def send_contact_auto_reply(self, email: str, first_name: str) -> bool:
        return await self._deliver(
            email,
            f"Thank you for contacting {get_settings().site_name}",
            "contact_auto_reply",
            {"first_name": first_name},
        )

    async def send_quote_notification(self, form: dict[str, Any]) -> bool:
        quote_type = form["quoteType"]
        return await self._deliver(
            get_settings().admin_email,
            f"New Quote Request: {quote_type.capitalize()}",
            "quote_notification",
            {
                "form": form,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            reply_to=form["email"],
        )

    async def send_quote_auto_reply(self, email: str, first_name: str, quote_type: str) -> bool:
        return await self._deliver(
            email,
            f"Thank you for your quote request - {get_settings().site_name}",
            "quote_auto_reply",
            {"first_name": first_name, "quote_type": quote_type},
        )


# Singleton
email_service = EmailService()
