"""
Outbound notification channels and the promotion client.

Every channel is best-effort: the job pipeline catches each channel's
failure separately and reports it in a NotificationOutcome. Notifications
are not the source of truth, so a failed delivery never fails the job.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from payment_events.core.job_payloads import NotifyPayload, PromotionPayload

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChannelFailure:
    """One channel that could not deliver."""

    channel: str
    cause: str


@dataclass
class NotificationOutcome:
    """
    Result of fanning a notification out.

    ``ok`` when no attempted channel failed; otherwise a partial failure
    listing each failed channel and its cause.
    """

    delivered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[ChannelFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok" if self.ok else "partial_failure",
            "delivered": list(self.delivered),
            "skipped": list(self.skipped),
            "failures": [{"channel": f.channel, "cause": f.cause} for f in self.failures],
        }


class NotificationChannel(Protocol):
    """A destination for notification messages."""

    name: str

    def accepts(self, notification: NotifyPayload) -> bool:
        """Whether this channel has anything to send for the notification."""
        ...

    async def send(self, notification: NotifyPayload) -> None:
        """Deliver the notification; raise on failure."""
        ...


class DiscordChannel:
    """Chat webhook channel (Discord-compatible ``{"content": ...}`` body)."""

    name = "discord"

    def __init__(self, webhook_url: str, client: httpx.AsyncClient):
        self.webhook_url = webhook_url
        self.client = client

    def accepts(self, notification: NotifyPayload) -> bool:
        return True

    async def send(self, notification: NotifyPayload) -> None:
        response = await self.client.post(self.webhook_url, json={"content": notification.text})
        response.raise_for_status()
        logger.info("discord_notification_sent", kind=notification.kind)


class EmailChannel:
    """SendGrid email channel; only used when the notification names a recipient."""

    name = "email"

    def __init__(
        self,
        api_key: str,
        sender: str,
        client: httpx.AsyncClient,
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
    ):
        self.api_key = api_key
        self.sender = sender
        self.client = client
        self.api_url = api_url

    def accepts(self, notification: NotifyPayload) -> bool:
        return bool(notification.email)

    async def send(self, notification: NotifyPayload) -> None:
        response = await self.client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "personalizations": [{"to": [{"email": notification.email}]}],
                "from": {"email": self.sender},
                "subject": "Payment Event",
                "content": [{"type": "text/plain", "value": notification.text}],
            },
        )
        response.raise_for_status()
        logger.info("email_notification_sent", kind=notification.kind)


class PromotionClient:
    """Forwards payment events to the ad/promotion service."""

    def __init__(self, api_url: Optional[str], client: httpx.AsyncClient):
        self.api_url = api_url
        self.client = client

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    async def promote(self, payload: PromotionPayload) -> Dict[str, Any]:
        """
        POST the payload to the promotion service.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx response
        """
        if not self.api_url:
            raise RuntimeError("Promotion service URL not configured")
        response = await self.client.post(self.api_url, json=payload.model_dump())
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            return {}
