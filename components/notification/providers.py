"""Channel providers used to deliver rendered notifications."""

import asyncio
import logging
import re
import smtplib
from email.message import EmailMessage
from typing import Dict, Optional

import requests

from components.core.config import Settings
from components.core.exceptions import DeliveryError, ValidationError
from components.notification.models import Channel

logger = logging.getLogger(__name__)


class NotificationProvider:
    """Delivers a message over one channel. Raises DeliveryError on failure."""

    channel: Channel

    async def send(self, recipient: str, subject: str, body: str) -> None:
        raise NotImplementedError


class EmailProvider(NotificationProvider):
    """SMTP email delivery."""

    channel = Channel.EMAIL

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailProvider":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            sender=settings.SMTP_FROM,
            use_tls=settings.SMTP_USE_TLS,
            timeout=settings.SEND_TIMEOUT_SECONDS,
        )

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body, charset="utf-8")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send(self, recipient: str, subject: str, body: str) -> None:
        if not self.host or not self.username:
            raise DeliveryError("SMTP configuration not set")

        message = self.build_message(recipient, subject, body)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"failed to send email: {exc}") from exc


def normalize_phone(phone: str) -> str:
    """Strip formatting and convert local 08xx numbers to 628xx."""
    cleaned = re.sub(r"[+\s\-]", "", phone or "")
    if cleaned.startswith("08"):
        cleaned = "62" + cleaned[1:]
    return cleaned


class WhatsAppProvider(NotificationProvider):
    """WhatsApp Cloud API text messages."""

    channel = Channel.WHATSAPP

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_url: str = "https://graph.facebook.com/v18.0",
        timeout: float = 30.0,
        http: Optional[requests.Session] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppProvider":
        return cls(
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            api_url=settings.WHATSAPP_API_URL,
            timeout=settings.SEND_TIMEOUT_SECONDS,
        )

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/{self.phone_number_id}/messages"

    def build_payload(self, recipient: str, body: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            "to": normalize_phone(recipient),
            "type": "text",
            "text": {"body": body},
        }

    def _post(self, payload: dict) -> requests.Response:
        return self.http.post(
            self.messages_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout,
        )

    async def send(self, recipient: str, subject: str, body: str) -> None:
        if not self.access_token or not self.phone_number_id:
            raise DeliveryError("WhatsApp configuration not set")

        try:
            response = await asyncio.to_thread(self._post, self.build_payload(recipient, body))
        except requests.RequestException as exc:
            raise DeliveryError(f"failed to send WhatsApp message: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise DeliveryError(f"WhatsApp API returned status {response.status_code}")


class LoggingProvider(NotificationProvider):
    """Stand-in used when a channel has no credentials; logs instead of sending."""

    def __init__(self, channel: Channel):
        self.channel = channel

    async def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info(
            "[MOCK %s] To: %s, Subject: %s, Body: %s",
            self.channel.value, recipient, subject, body,
        )


class ProviderRegistry:
    """Maps each channel to the provider that delivers it."""

    def __init__(self, providers: Dict[Channel, NotificationProvider]):
        self._providers = dict(providers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        providers: Dict[Channel, NotificationProvider] = {}

        if settings.email_configured:
            providers[Channel.EMAIL] = EmailProvider.from_settings(settings)
        else:
            providers[Channel.EMAIL] = LoggingProvider(Channel.EMAIL)

        if settings.whatsapp_configured:
            providers[Channel.WHATSAPP] = WhatsAppProvider.from_settings(settings)
        else:
            providers[Channel.WHATSAPP] = LoggingProvider(Channel.WHATSAPP)

        for channel, provider in providers.items():
            logger.info("Using %s for %s notifications", type(provider).__name__, channel.value)
        return cls(providers)

    def get(self, channel: Channel) -> NotificationProvider:
        try:
            return self._providers[Channel(channel)]
        except (KeyError, ValueError):
            raise ValidationError(f"unsupported notification channel: {channel}") from None
