"""Knock adapter - triggers Knock workflows, which own the final delivery."""

import logging
from typing import Optional

import httpx

from ..models import NotificationChannel
from .base import ChannelAdapter, NotificationPayload, SendResult
from .errors import format_error

logger = logging.getLogger(__name__)

CHANNEL_WORKFLOWS = {
    NotificationChannel.EMAIL: "email-notification",
    NotificationChannel.SLACK: "slack-notification",
    NotificationChannel.SMS: "sms-notification",
    NotificationChannel.WEBHOOK: "webhook-notification",
}


def workflow_key(payload: NotificationPayload) -> str:
    """Workflow for a notification.

    ``shipment.delivered`` in metadata.triggerEvent maps to
    ``shipment-delivered``; otherwise the channel's default workflow.
    """
    trigger = (payload.metadata or {}).get("triggerEvent")
    if trigger:
        return str(trigger).replace(".", "-")
    return CHANNEL_WORKFLOWS.get(payload.channel, "default-notification")


class KnockAdapter(ChannelAdapter):
    """Sends notifications for one channel through Knock."""

    API_BASE = "https://api.knock.app/v1"

    def __init__(
        self,
        channel: NotificationChannel,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.channel = channel
        self.api_key = api_key
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=30.0,
            )
        return self._client

    async def send(self, payload: NotificationPayload) -> SendResult:
        key = workflow_key(payload)
        body = {
            "recipients": [payload.recipient],
            "data": {
                **(payload.metadata or {}),
                "subject": payload.subject,
                "body": payload.body,
                "channel": payload.channel.value,
            },
        }
        headers = {}
        if payload.dedupe_key:
            headers["Idempotency-Key"] = payload.dedupe_key

        try:
            client = await self._get_client()
            response = await client.post(
                f"{self.API_BASE}/workflows/{key}/trigger",
                json=body,
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            error = format_error(e, "Knock")
            logger.error(f"Knock workflow {key} failed for {payload.recipient}: {error}")
            return SendResult(success=False, error=error)

        logger.info(f"Triggered Knock workflow {key} for {payload.recipient}")
        return SendResult(success=True, provider_id=data.get("workflow_run_id"))

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
