"""
Outbound email transports.

``SendGridTransport`` talks to the SendGrid v3 mail API; ``LogTransport`` only
logs messages and is the default outside production.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from api.config.logging import get_logger
from api.config.settings import EmailBackend, Settings
from api.v1.infra.jobs.errors import parse_retry_after

logger = get_logger(__name__)


@dataclass
class EmailAttachment:
    filename: str
    content_base64: str
    content_type: str = "application/pdf"


@dataclass
class EmailMessage:
    to: list[str]
    subject: str
    body: str
    html: bool = False
    attachments: list[EmailAttachment] = field(default_factory=list)


class EmailSendError(Exception):
    """The provider rejected or failed to accept a message."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "send_failed",
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retry_after_s = retry_after_s


class EmailTransport(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class LogTransport:
    """Transport that records messages instead of delivering them."""

    def __init__(self):
        self.sent: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.sent.append(message)
        logger.info(
            "email.logged",
            to=message.to,
            subject=message.subject,
            attachments=len(message.attachments),
        )


class SendGridTransport:
    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str | None = None,
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.api_url = api_url
        self.timeout_s = timeout_s
        self._transport = transport

    def build_payload(self, message: EmailMessage) -> dict[str, Any]:
        sender: dict[str, str] = {"email": self.from_address}
        if self.from_name:
            sender["name"] = self.from_name

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to} for to in message.to]}],
            "from": sender,
            "subject": message.subject,
            "content": [
                {
                    "type": "text/html" if message.html else "text/plain",
                    "value": message.body,
                }
            ],
        }
        if message.attachments:
            payload["attachments"] = [
                {
                    "content": attachment.content_base64,
                    "filename": attachment.filename,
                    "type": attachment.content_type,
                    "disposition": "attachment",
                }
                for attachment in message.attachments
            ]
        return payload

    async def send(self, message: EmailMessage) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s, transport=self._transport
            ) as client:
                response = await client.post(
                    self.api_url,
                    json=self.build_payload(message),
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException as e:
            raise EmailSendError(f"SendGrid timeout: {e}", code="timeout") from e
        except httpx.TransportError as e:
            raise EmailSendError(
                f"SendGrid unreachable: {e}", code="network_error"
            ) from e

        if response.status_code >= 400:
            raise EmailSendError(
                f"SendGrid rejected message ({response.status_code}): "
                f"{response.text[:200]}",
                code=f"sendgrid_{response.status_code}",
                status_code=response.status_code,
                retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
            )

        logger.debug("email.sent", to=message.to, status=response.status_code)


def build_email_transport(settings: Settings) -> EmailTransport:
    if settings.email_backend == EmailBackend.SENDGRID:
        return SendGridTransport(
            api_key=settings.sendgrid_api_key or "",
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            api_url=settings.sendgrid_api_url,
        )
    return LogTransport()
