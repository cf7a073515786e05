"""Notification channel adapters."""

from .base import ChannelAdapter, NotificationPayload, SendResult
from .knock import KnockAdapter
from .logging_adapter import LoggingAdapter
from .registry import ChannelRegistry, build_channel_registry
from .slack import SlackAdapter
from .webhook import WebhookAdapter

__all__ = [
    "ChannelAdapter",
    "NotificationPayload",
    "SendResult",
    "ChannelRegistry",
    "build_channel_registry",
    "LoggingAdapter",
    "SlackAdapter",
    "WebhookAdapter",
    "KnockAdapter",
]
