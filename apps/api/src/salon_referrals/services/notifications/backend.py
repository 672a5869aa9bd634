"""Email and SMS backends for reward notifications."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional, Protocol

import httpx


class NotificationDeliveryError(RuntimeError):
    """Raised by a backend when the upstream provider rejects a message."""

    def __init__(self, message: str, *, channel: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.channel = channel
        self.status_code = status_code


class EmailBackend(Protocol):
    """Minimal protocol for sending notification emails."""

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        ...


class SMSBackend(Protocol):
    """Protocol for SMS dispatchers; returns the provider message id when known."""

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        ...


def _build_message(
    sender: str | None,
    recipient: str,
    subject: str,
    body_text: str,
    body_html: str | None,
    reply_to: str | None,
) -> EmailMessage:
    message = EmailMessage()
    if sender:
        message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    if reply_to:
        message["Reply-To"] = reply_to
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")
    return message


class SMTPEmailBackend:
    """SMTP-powered backend; the blocking send runs in a worker thread."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        use_tls: bool,
        sender_email: str,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._sender_email = sender_email

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        message = _build_message(self._sender_email, recipient, subject, body_text, body_html, reply_to)
        await asyncio.to_thread(self._send, message)

    def _send(self, message: EmailMessage) -> None:
        smtp = smtplib.SMTP(self._host, self._port, timeout=10)
        try:
            if self._use_tls:
                smtp.starttls()
            if self._username and self._password:
                smtp.login(self._username, self._password)
            smtp.send_message(message)
        finally:
            smtp.quit()


class TwilioSMSBackend:
    """Sends SMS through the Twilio Messages REST API."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        messaging_service_sid: str | None = None,
        from_number: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        base_url: str = "https://api.twilio.com",
    ) -> None:
        if not messaging_service_sid and not from_number:
            raise ValueError("Twilio requires a messaging service sid or a sender number")
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._messaging_service_sid = messaging_service_sid
        self._from_number = from_number
        self._http_client = http_client
        self._timeout = timeout_seconds
        self._base_url = base_url.rstrip("/")

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        form = {"To": recipient, "Body": body_text}
        if self._messaging_service_sid:
            form["MessagingServiceSid"] = self._messaging_service_sid
        else:
            form["From"] = self._from_number or ""

        url = f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(url, data=form, auth=(self._account_sid, self._auth_token))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NotificationDeliveryError(
                f"Twilio rejected message: {exc.response.text[:256]}",
                channel="sms",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(f"Twilio request failed: {exc}", channel="sms") from exc
        finally:
            if owns_client:
                await client.aclose()

        try:
            payload = response.json()
        except ValueError:
            return None
        return payload.get("sid") if isinstance(payload, dict) else None


@dataclass
class InMemoryEmailBackend:
    """Test backend storing outbound messages in memory."""

    sent_messages: List[EmailMessage]

    def __init__(self) -> None:
        self.sent_messages = []

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        self.sent_messages.append(_build_message(None, recipient, subject, body_text, body_html, reply_to))


@dataclass
class InMemorySMSBackend:
    """Stores SMS payloads for inspection in tests."""

    sent_messages: List[tuple[str, str]]

    def __init__(self) -> None:
        self.sent_messages = []

    async def send_sms(self, recipient: str, body_text: str) -> str | None:
        self.sent_messages.append((recipient, body_text))
        return f"SM{len(self.sent_messages):032d}"
