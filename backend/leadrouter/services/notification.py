# backend/leadrouter/services/notification.py
"""Operator alerts for overflow and fallback routing."""

import asyncio
import json
import logging
import smtplib
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional

import httpx

from leadrouter.config import settings
from leadrouter.services.side_effects import run_best_effort

logger = logging.getLogger(__name__)

CAPACITY_OVERFLOW = "capacity_overflow"
ROUTING_FALLBACK = "routing_fallback"


@dataclass(frozen=True)
class RoutingAlert:
    alert_type: str
    lead_id: Optional[str]
    postal_code: Optional[str]
    source: Optional[str]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_alert_message(alert: RoutingAlert, now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now(timezone.utc)).isoformat()

    if alert.alert_type == CAPACITY_OVERFLOW:
        return (
            "CAPACITY OVERFLOW ALERT\n\n"
            f"Lead ID: {alert.lead_id}\n"
            f"Zip Code: {alert.postal_code}\n"
            f"Source: {alert.source}\n"
            f"Time: {timestamp}\n\n"
            "All locations are at capacity. Lead has been assigned to overflow queue.\n"
            "Action Required: Review capacity settings or add temporary capacity."
        )

    if alert.alert_type == ROUTING_FALLBACK:
        return (
            "ROUTING FALLBACK ALERT\n\n"
            f"Lead ID: {alert.lead_id}\n"
            f"Zip Code: {alert.postal_code}\n"
            f"Error: {alert.error}\n"
            f"Time: {timestamp}\n\n"
            "Primary routing failed, using fallback location.\n"
            "Action Required: Investigate routing algorithm issues."
        )

    return f"Alert: {alert.alert_type}\nData: {json.dumps(alert.to_dict(), indent=2)}"


class NotificationService:
    """
    Fans an alert out to Slack (incoming webhook) and email.

    Unconfigured channels are skipped; each configured channel is
    independently best-effort.
    """

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        email_from: Optional[str] = None,
        admin_email: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        smtp_factory: Callable = smtplib.SMTP,
    ):
        self.slack_webhook_url = slack_webhook_url
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port or settings.SMTP_PORT
        self.email_from = email_from or settings.ALERT_EMAIL_FROM
        self.admin_email = admin_email
        self.timeout = timeout or settings.ALERT_TIMEOUT_SECONDS
        self._transport = transport
        self._smtp_factory = smtp_factory

    @classmethod
    def from_settings(cls) -> "NotificationService":
        return cls(
            slack_webhook_url=settings.SLACK_WEBHOOK_URL,
            smtp_host=settings.SMTP_HOST,
            admin_email=settings.ADMIN_EMAIL,
        )

    async def send(self, alert: RoutingAlert) -> Dict[str, bool]:
        """Deliver on every configured channel; returns channel -> delivered."""
        message = build_alert_message(alert)
        channels = {}

        if self.slack_webhook_url:
            channels["slack"] = run_best_effort("slack_alert", self.send_slack(alert, message), alert.alert_type)
        if self.smtp_host and self.admin_email:
            channels["email"] = run_best_effort("email_alert", self.send_email(alert, message), alert.alert_type)

        if not channels:
            logger.warning(f"No alert channels configured; {alert.alert_type} alert only logged:\n{message}")
            return {}

        results = await asyncio.gather(*channels.values())
        return dict(zip(channels.keys(), results))

    async def send_slack(self, alert: RoutingAlert, message: str) -> None:
        payload = {
            "text": f"Lead Routing Alert: {alert.alert_type}",
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": message}},
                {
                    "type": "context",
                    "elements": [{
                        "type": "mrkdwn",
                        "text": f"Environment: {settings.ENVIRONMENT} | Time: {datetime.now(timezone.utc).isoformat()}",
                    }],
                },
            ],
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.slack_webhook_url, json=payload)
            response.raise_for_status()
        logger.info(f"Slack alert sent: {alert.alert_type}")

    async def send_email(self, alert: RoutingAlert, message: str) -> None:
        email = EmailMessage()
        email["Subject"] = f"Lead Routing Alert: {alert.alert_type}"
        email["From"] = self.email_from
        email["To"] = self.admin_email
        email.set_content(message)

        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._deliver_email, email)
        logger.info(f"Email alert sent to {self.admin_email}: {alert.alert_type}")

    def _deliver_email(self, email: EmailMessage) -> None:
        with self._smtp_factory(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
            smtp.send_message(email)


class RecordingAlertSink:
    """In-memory alert sink for tests."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.alerts: List[RoutingAlert] = []
        self.fail_with = fail_with

    async def send(self, alert: RoutingAlert) -> Dict[str, bool]:
        if self.fail_with is not None:
            raise self.fail_with
        self.alerts.append(alert)
        return {"recorded": True}

    def of_type(self, alert_type: str) -> List[RoutingAlert]:
        return [a for a in self.alerts if a.alert_type == alert_type]
