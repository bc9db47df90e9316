import asyncio
import logging
from email.message import EmailMessage
from email.utils import formatdate
from typing import Any, Optional, Protocol

import aiosmtplib
from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError, select_autoescape

from mailrelay.core.config import settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class TransientNotificationError(NotificationError):
    """Send failed but may succeed on redelivery."""


class PermanentNotificationError(NotificationError):
    """Send can never succeed for this payload."""


class NotificationSender(Protocol):
    async def send(self, recipient: str, template_vars: dict[str, Any]) -> None: ...


class SmtpNotificationSender:
    def __init__(
        self,
        host: str = settings.smtp_host,
        port: int = settings.smtp_port,
        username: Optional[str] = settings.smtp_username,
        password: Optional[str] = settings.smtp_password,
        use_tls: bool = settings.smtp_use_tls,
        timeout: float = settings.smtp_timeout_seconds,
        sender: str = settings.mail_from,
        subject: str = settings.welcome_subject,
        template_name: str = "welcome.html"
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.sender = sender
        self.subject = subject
        self.template_name = template_name
        self.environment = Environment(
            loader=PackageLoader("mailrelay", "templates"),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined
        )

    def render(self, template_vars: dict[str, Any]) -> str:
        try:
            return self.environment.get_template(self.template_name).render(**template_vars)
        except TemplateError as e:
            raise PermanentNotificationError(f"Cannot render {self.template_name}: {e}") from e

    def build_message(self, recipient: str, template_vars: dict[str, Any]) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = self.subject
        message["Date"] = formatdate(localtime=True)
        message.set_content(f"Welcome aboard, {template_vars.get('name', '')}.")
        message.add_alternative(self.render(template_vars), subtype="html")
        return message

    async def send(self, recipient: str, template_vars: dict[str, Any]) -> None:
        message = self.build_message(recipient, template_vars)
        client = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            start_tls=False,
            timeout=self.timeout
        )
        try:
            async with client:
                if self.use_tls:
                    await client.starttls()
                if self.username:
                    await client.login(self.username, self.password or "")
                await client.send_message(message)
        except aiosmtplib.SMTPRecipientsRefused as e:
            refused = [r.recipient for r in e.recipients]
            raise PermanentNotificationError(f"Recipient refused: {refused}") from e
        except aiosmtplib.SMTPResponseException as e:
            if 500 <= e.code < 600:
                raise PermanentNotificationError(f"SMTP {e.code}: {e.message}") from e
            raise TransientNotificationError(f"SMTP {e.code}: {e.message}") from e
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            raise TransientNotificationError(f"{type(e).__name__}: {str(e)}") from e

        logger.info(f"Welcome mail sent to {recipient}")
