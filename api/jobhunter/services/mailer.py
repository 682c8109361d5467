from __future__ import annotations

import base64
import html
import logging
from dataclasses import dataclass
from email import encoders
from email.header import Header
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from functools import lru_cache
from typing import Any

import httpx

from jobhunter.core.config import get_settings
from jobhunter.core.errors import CredentialError, ProviderError
from jobhunter.core.http import client_session, response_detail

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_ATTACHMENT_TYPE = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class Attachment:
    file_name: str
    mime_type: str
    content: bytes


@dataclass(frozen=True, slots=True)
class OutgoingEmail:
    to: str
    subject: str
    body: str
    attachment: Attachment | None = None
    reply_to: str | None = None


def body_to_html(body: str) -> str:
    return html.escape(body).replace("\r\n", "\n").replace("\n", "<br>")


def build_mime_message(email: OutgoingEmail) -> MIMEBase:
    """Single-part HTML message, or multipart/mixed with exactly one attachment part."""
    html_part = MIMEText(body_to_html(email.body), "html", "utf-8")

    if email.attachment is None:
        message: MIMEBase = html_part
    else:
        message = MIMEMultipart("mixed")
        message.attach(html_part)
        message.attach(_attachment_part(email.attachment))

    message["To"] = email.to
    message["Subject"] = Header(email.subject, "utf-8")
    if email.reply_to:
        message["Reply-To"] = email.reply_to
    return message


def _attachment_part(attachment: Attachment) -> MIMEBase:
    maintype, _, subtype = (attachment.mime_type or DEFAULT_ATTACHMENT_TYPE).partition("/")
    if not maintype or not subtype:
        maintype, _, subtype = DEFAULT_ATTACHMENT_TYPE.partition("/")
    part = MIMEBase(maintype, subtype)
    part.set_payload(attachment.content)
    encoders.encode_base64(part)
    part.add_header("Content-Disposition", "attachment", filename=attachment.file_name)
    return part


def encode_raw_message(message: MIMEBase) -> str:
    """URL-safe base64 of the full message with the trailing padding removed."""
    return base64.urlsafe_b64encode(message.as_bytes()).rstrip(b"=").decode("ascii")


class GmailMailer:
    channel = "delegated"

    def __init__(
        self,
        *,
        base_url: str = "https://gmail.googleapis.com/gmail/v1",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def send(self, access_token: str, email: OutgoingEmail) -> str | None:
        raw = encode_raw_message(build_mime_message(email))
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with client_session(self._client, timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/users/me/messages/send",
                    json={"raw": raw},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise ProviderError(f"mailbox API unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(f"mailbox API error {response.status_code}: {response_detail(response)}")
        try:
            payload: Any = response.json()
        except ValueError:
            return None
        return payload.get("id") if isinstance(payload, dict) else None


class SendGridMailer:
    channel = "transactional"

    def __init__(
        self,
        *,
        api_key: str | None,
        from_email: str,
        from_name: str = "",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    async def send(self, email: OutgoingEmail) -> str | None:
        if not self.configured:
            raise CredentialError("transactional sender is not configured")

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": email.to}]}],
            "from": {"email": self.from_email, **({"name": self.from_name} if self.from_name else {})},
            "subject": email.subject,
            "content": [{"type": "text/html", "value": body_to_html(email.body)}],
        }
        if email.reply_to:
            payload["reply_to"] = {"email": email.reply_to}
        if email.attachment is not None:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(email.attachment.content).decode("ascii"),
                    "filename": email.attachment.file_name,
                    "type": email.attachment.mime_type or DEFAULT_ATTACHMENT_TYPE,
                    "disposition": "attachment",
                }
            ]

        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with client_session(self._client, timeout=self.timeout_seconds) as client:
                response = await client.post(SENDGRID_SEND_URL, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"transactional sender unreachable: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise ProviderError(f"transactional sender error {response.status_code}: {response_detail(response)}")
        return response.headers.get("X-Message-Id")


@lru_cache
def get_gmail_mailer() -> GmailMailer:
    settings = get_settings()
    return GmailMailer(base_url=settings.gmail_api_base_url, timeout_seconds=settings.mail_timeout_seconds)


@lru_cache
def get_transactional_mailer() -> SendGridMailer:
    settings = get_settings()
    return SendGridMailer(
        api_key=settings.sendgrid_api_key,
        from_email=settings.sendgrid_from_email,
        from_name=settings.sendgrid_from_name,
        timeout_seconds=settings.mail_timeout_seconds,
    )
