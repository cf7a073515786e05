"""Channel adapter registry - maps each channel to exactly one adapter."""

import logging
from typing import Optional

from ..config import Settings
from ..models import NotificationChannel
from .base import ChannelAdapter, NotificationPayload, SendResult
from .knock import KnockAdapter
from .logging_adapter import LoggingAdapter
from .slack import SlackAdapter
from .webhook import WebhookAdapter

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Routes notifications to the adapter registered for their channel."""

    def __init__(self):
        self._adapters: dict[NotificationChannel, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter) -> None:
        """Register an adapter, replacing any previous one for its channel."""
        channel = NotificationChannel(adapter.channel)
        if channel in self._adapters:
            logger.info(f"Replacing adapter for {channel.value}")
        self._adapters[channel] = adapter

    def get(self, channel) -> Optional[ChannelAdapter]:
        try:
            return self._adapters.get(NotificationChannel(channel))
        except ValueError:
            return None

    def channels(self) -> list[NotificationChannel]:
        return list(self._adapters)

    async def send(self, payload: NotificationPayload) -> SendResult:
        """Send through the channel's adapter.

        An unregistered channel is reported as a failed SendResult.
        """
        adapter = self.get(payload.channel)
        if adapter is None:
            channel = getattr(payload.channel, "value", payload.channel)
            logger.warning(f"No adapter registered for channel: {channel}")
            return SendResult(
                success=False, error=f"No adapter registered for channel: {channel}"
            )
        return await adapter.send(payload)

    async def close(self) -> None:
        """Close adapters that hold network clients."""
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


def build_channel_registry(settings: Settings) -> ChannelRegistry:
    """Build the registry for the configured adapter mode.

    ``logging`` mode registers a LoggingAdapter for every channel. ``live``
    mode registers real adapters where credentials are configured and falls
    back to logging for the rest.
    """
    registry = ChannelRegistry()
    for channel in NotificationChannel:
        registry.register(LoggingAdapter(channel))

    if settings.channel_adapter_mode != "live":
        logger.info("Channel adapters: logging mode")
        return registry

    if settings.slack_bot_token:
        registry.register(SlackAdapter(token=settings.slack_bot_token))
    registry.register(
        WebhookAdapter(
            signing_secret=settings.webhook_signing_secret,
            timeout=settings.webhook_timeout_seconds,
        )
    )
    if settings.knock_api_key:
        for channel in (NotificationChannel.EMAIL, NotificationChannel.SMS):
            registry.register(KnockAdapter(channel, settings.knock_api_key))

    live = [
        c.value
        for c in registry.channels()
        if not isinstance(registry.get(c), LoggingAdapter)
    ]
    logger.info(f"Channel adapters: live mode ({', '.join(live) or 'none'})")
    return registry
