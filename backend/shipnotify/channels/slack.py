"""Slack adapter - posts notifications to a channel or user."""

import logging
from typing import Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from ..models import NotificationChannel
from .base import ChannelAdapter, NotificationPayload, SendResult

logger = logging.getLogger(__name__)


class SlackAdapter(ChannelAdapter):
    """Sends SLACK notifications with chat.postMessage."""

    channel = NotificationChannel.SLACK

    def __init__(self, token: str = "", client: Optional[WebClient] = None):
        self.client = client or WebClient(token=token)

    def format_message(self, payload: NotificationPayload) -> str:
        if payload.subject:
            return f"*{payload.subject}*\n{payload.body}"
        return payload.body

    async def send(self, payload: NotificationPayload) -> SendResult:
        try:
            response = self.client.chat_postMessage(
                channel=payload.recipient,
                text=self.format_message(payload),
                mrkdwn=True,
            )
            logger.info(f"Sent Slack notification to {payload.recipient}")
            return SendResult(success=True, provider_id=response.get("ts"))
        except SlackApiError as e:
            error = e.response.get("error", str(e)) if e.response else str(e)
            logger.error(f"Failed to send Slack message to {payload.recipient}: {e}")
            return SendResult(success=False, error=f"slack_error: {error}")
