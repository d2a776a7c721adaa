"""Notification dispatcher - routes notifications to email, SMS, voice and webhook channels."""
import logging
from typing import Optional
from xml.sax.saxutils import escape

import httpx

from ..utils.db_utils import utcnow
from .dispatch_result import DispatchResult
from .email_sender import EmailSender

logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"
CHANNEL_VOICE = "voice"
CHANNEL_WEBHOOK = "webhook"

CHANNELS = (CHANNEL_EMAIL, CHANNEL_SMS, CHANNEL_VOICE, CHANNEL_WEBHOOK)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
SMS_MAX_LENGTH = 1600


class WebhookSender:
    """POSTs a JSON notification to a URL."""

    def __init__(self, timeout_seconds: float = 10, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def send(
        self,
        url: str,
        subject: str,
        body: str,
        idempotency_key: Optional[str] = None,
    ) -> DispatchResult:
        payload = {
            "event": "notification",
            "subject": subject,
            "body": body,
            "timestamp": utcnow().isoformat() + "Z",
        }
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook to {url}: {e}")
            return DispatchResult(success=False, error=f"{type(e).__name__}: {e}")

        if response.status_code < 400:
            logger.info(f"Webhook sent: {subject}")
            return DispatchResult(
                success=True,
                provider_message_id=response.headers.get("x-request-id") or idempotency_key,
            )
        logger.warning(f"Webhook returned {response.status_code}")
        return DispatchResult(success=False, error=f"Webhook returned HTTP {response.status_code}")


class TwilioSender:
    """Sends SMS messages and places voice calls through the Twilio REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send_sms(self, to_number: str, message: str) -> DispatchResult:
        if len(message) > SMS_MAX_LENGTH:
            message = message[:SMS_MAX_LENGTH - 3] + "..."
        return await self._post("Messages.json", {"To": to_number, "From": self.from_number, "Body": message})

    async def place_call(self, to_number: str, message: str) -> DispatchResult:
        twiml = f'<Response><Say voice="alice">{escape(message)}</Say></Response>'
        return await self._post("Calls.json", {"To": to_number, "From": self.from_number, "Twiml": twiml})

    async def _post(self, resource: str, data: dict) -> DispatchResult:
        if not self.enabled:
            logger.warning("Twilio not configured - missing account SID, auth token or from number")
            return DispatchResult(success=False, error="SMS/voice service not configured")

        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/{resource}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(url, data=data, auth=(self.account_sid, self.auth_token))
        except httpx.HTTPError as e:
            logger.error(f"Twilio request failed: {e}")
            return DispatchResult(success=False, error=f"{type(e).__name__}: {e}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            logger.warning(f"Twilio returned {response.status_code}: {detail}")
            return DispatchResult(success=False, error=f"Twilio HTTP {response.status_code}: {detail}")

        return DispatchResult(success=True, provider_message_id=response.json().get("sid"))


class NotificationDispatcher:
    """Single entry point for sending a notification over any channel.

    ``send`` never raises: unknown channels, missing configuration and
    provider failures all come back as an unsuccessful ``DispatchResult``.
    """

    def __init__(
        self,
        email_sender: EmailSender,
        twilio_sender: TwilioSender,
        webhook_sender: WebhookSender,
    ):
        self.email_sender = email_sender
        self.twilio_sender = twilio_sender
        self.webhook_sender = webhook_sender

    async def send(
        self,
        channel: str,
        target: str,
        subject: str,
        body: str,
        idempotency_key: Optional[str] = None,
    ) -> DispatchResult:
        """Send one notification to one target address on one channel."""
        if not target:
            return DispatchResult(success=False, error=f"No {channel} address for recipient")

        try:
            if channel == CHANNEL_EMAIL:
                return await self.email_sender.send(target, subject, body)
            if channel == CHANNEL_SMS:
                return await self.twilio_sender.send_sms(target, f"{subject}\n\n{body}")
            if channel == CHANNEL_VOICE:
                return await self.twilio_sender.place_call(target, f"{subject}. {body}")
            if channel == CHANNEL_WEBHOOK:
                return await self.webhook_sender.send(target, subject, body, idempotency_key)
        except Exception as e:
            logger.error(f"Unexpected error sending {channel} notification: {type(e).__name__}: {e}")
            return DispatchResult(success=False, error=f"{type(e).__name__}: {e}")

        return DispatchResult(success=False, error=f"Unknown channel: {channel}")
