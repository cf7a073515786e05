"""Base types for notification channel adapters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ..models import NotificationChannel


@dataclass
class NotificationPayload:
    """A rendered notification addressed to one recipient.

    Attributes:
        channel: Channel the notification is routed through
        recipient: Channel-specific target (email, phone, Slack channel, URL)
        body: Rendered message body
        subject: Rendered subject line, if the channel uses one
        metadata: Trace fields (rule, template, event, recipient metadata)
        dedupe_key: Idempotency key, forwarded to providers that support one
    """

    channel: NotificationChannel
    recipient: str
    body: str
    subject: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    dedupe_key: Optional[str] = None


@dataclass
class SendResult:
    """Result of a send attempt. Adapters never raise for provider errors."""

    success: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


class ChannelAdapter(ABC):
    """Delivers notifications for a single channel."""

    channel: NotificationChannel

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> SendResult:
        """Deliver one notification."""
        pass
