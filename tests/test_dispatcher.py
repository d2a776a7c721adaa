from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from alert24.services.dispatcher import NotificationDispatcher, TwilioSender, WebhookSender
from alert24.services.email_sender import EmailConfig, EmailSender


def _dispatcher(handler, twilio_sid: str = "AC123") -> NotificationDispatcher:
    transport = httpx.MockTransport(handler)
    return NotificationDispatcher(
        EmailSender(EmailConfig(host="", port=587, username="", password="")),
        TwilioSender(twilio_sid, "token", "+15550000", transport=transport),
        WebhookSender(transport=transport),
    )


@pytest.mark.asyncio
async def test_webhook_posts_json_with_idempotency_key() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, headers={"x-request-id": "req-1"})

    result = await _dispatcher(handler).send(
        "webhook", "https://hooks.example.com/a", "Subject", "Body", idempotency_key="incident-1-step-0"
    )

    assert result.success
    assert result.provider_message_id == "req-1"
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["Idempotency-Key"] == "incident-1-step-0"
    payload = json.loads(request.content)
    assert payload["subject"] == "Subject"
    assert payload["body"] == "Body"


@pytest.mark.asyncio
async def test_webhook_error_status_is_a_failed_result() -> None:
    result = await _dispatcher(lambda request: httpx.Response(500)).send(
        "webhook", "https://hooks.example.com/a", "Subject", "Body"
    )

    assert not result.success
    assert "500" in result.error


@pytest.mark.asyncio
async def test_webhook_connection_error_does_not_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    result = await _dispatcher(handler).send("webhook", "https://hooks.example.com/a", "Subject", "Body")

    assert not result.success
    assert "ConnectError" in result.error


@pytest.mark.asyncio
async def test_sms_goes_to_twilio_messages() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM42"})

    result = await _dispatcher(handler).send("sms", "+15551234", "Subject", "Body")

    assert result.success
    assert result.provider_message_id == "SM42"
    request = seen[0]
    assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    form = parse_qs(request.content.decode())
    assert form["To"] == ["+15551234"]
    assert form["From"] == ["+15550000"]
    assert form["Body"] == ["Subject\n\nBody"]
    assert request.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_voice_places_call_with_escaped_twiml() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "CA7"})

    result = await _dispatcher(handler).send("voice", "+15551234", "DB <down>", "Body")

    assert result.success
    assert seen[0].url.path.endswith("/Calls.json")
    twiml = parse_qs(seen[0].content.decode())["Twiml"][0]
    assert "DB &lt;down&gt;" in twiml


@pytest.mark.asyncio
async def test_twilio_error_message_is_reported() -> None:
    handler = lambda request: httpx.Response(400, json={"message": "Invalid 'To' number"})  # noqa: E731

    result = await _dispatcher(handler).send("sms", "12", "Subject", "Body")

    assert not result.success
    assert "Invalid 'To' number" in result.error


@pytest.mark.asyncio
async def test_unconfigured_channels_fail_without_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    dispatcher = _dispatcher(handler, twilio_sid="")

    email = await dispatcher.send("email", "alice@example.com", "Subject", "Body")
    sms = await dispatcher.send("sms", "+15551234", "Subject", "Body")

    assert not email.success
    assert email.error == "Email service not configured"
    assert not sms.success
    assert sms.error == "SMS/voice service not configured"


@pytest.mark.asyncio
async def test_unknown_channel_and_missing_target() -> None:
    dispatcher = _dispatcher(lambda request: httpx.Response(200))

    unknown = await dispatcher.send("pager", "someone", "Subject", "Body")
    missing = await dispatcher.send("email", "", "Subject", "Body")

    assert unknown.error == "Unknown channel: pager"
    assert not missing.success
