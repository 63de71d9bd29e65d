# tests/services/test_notification.py
"""Operator alert formatting and channel fan-out."""

import json

import httpx
import pytest

from leadrouter.services.notification import (
    CAPACITY_OVERFLOW,
    ROUTING_FALLBACK,
    NotificationService,
    RecordingAlertSink,
    RoutingAlert,
    build_alert_message,
)

OVERFLOW_ALERT = RoutingAlert(
    alert_type=CAPACITY_OVERFLOW, lead_id="lead-1", postal_code="10001", source="google"
)
FALLBACK_ALERT = RoutingAlert(
    alert_type=ROUTING_FALLBACK, lead_id="lead-2", postal_code="00000", source="facebook",
    error="Invalid zip code: 00000",
)


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def send_message(self, message):
        FakeSMTP.sent.append(message)


class TestAlertMessages:

    def test_overflow_message(self):
        message = build_alert_message(OVERFLOW_ALERT)

        assert message.startswith("CAPACITY OVERFLOW ALERT")
        assert "Lead ID: lead-1" in message
        assert "Zip Code: 10001" in message
        assert "Source: google" in message

    def test_fallback_message_carries_error(self):
        message = build_alert_message(FALLBACK_ALERT)

        assert message.startswith("ROUTING FALLBACK ALERT")
        assert "Error: Invalid zip code: 00000" in message

    def test_unknown_type_dumps_data(self):
        message = build_alert_message(RoutingAlert("custom", "lead-3", "10001", "web"))
        assert message.startswith("Alert: custom")
        assert '"lead_id": "lead-3"' in message


class TestNotificationService:

    @pytest.mark.asyncio
    async def test_slack_delivery(self):
        posted = []

        def handler(request):
            posted.append(request)
            return httpx.Response(200, text="ok")

        service = NotificationService(
            slack_webhook_url="https://hooks.slack.test/T000",
            transport=httpx.MockTransport(handler),
        )

        assert await service.send(OVERFLOW_ALERT) == {"slack": True}
        body = json.loads(posted[0].content)
        assert body["text"] == "Lead Routing Alert: capacity_overflow"
        assert "CAPACITY OVERFLOW ALERT" in body["blocks"][0]["text"]["text"]

    @pytest.mark.asyncio
    async def test_slack_failure_is_contained(self):
        service = NotificationService(
            slack_webhook_url="https://hooks.slack.test/T000",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        assert await service.send(FALLBACK_ALERT) == {"slack": False}

    @pytest.mark.asyncio
    async def test_email_delivery(self):
        FakeSMTP.sent = []
        service = NotificationService(
            smtp_host="mail.test",
            smtp_port=2525,
            admin_email="ops@example.com",
            email_from="alerts@example.com",
            smtp_factory=FakeSMTP,
        )

        assert await service.send(FALLBACK_ALERT) == {"email": True}
        (message,) = FakeSMTP.sent
        assert message["To"] == "ops@example.com"
        assert message["Subject"] == "Lead Routing Alert: routing_fallback"
        assert "ROUTING FALLBACK ALERT" in message.get_content()

    @pytest.mark.asyncio
    async def test_channels_fail_independently(self):
        def broken_smtp(*args, **kwargs):
            raise ConnectionRefusedError("smtp down")

        service = NotificationService(
            slack_webhook_url="https://hooks.slack.test/T000",
            smtp_host="mail.test",
            admin_email="ops@example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
            smtp_factory=broken_smtp,
        )

        assert await service.send(OVERFLOW_ALERT) == {"slack": True, "email": False}

    @pytest.mark.asyncio
    async def test_no_channels_configured(self):
        assert await NotificationService().send(OVERFLOW_ALERT) == {}


class TestRecordingAlertSink:

    @pytest.mark.asyncio
    async def test_records_by_type(self):
        sink = RecordingAlertSink()
        await sink.send(OVERFLOW_ALERT)
        await sink.send(FALLBACK_ALERT)

        assert sink.of_type(ROUTING_FALLBACK) == [FALLBACK_ALERT]
