"""No-op adapter for development: logs notifications instead of sending."""

import itertools
import logging
import time
from collections import deque

from ..models import NotificationChannel
from .base import ChannelAdapter, NotificationPayload, SendResult

logger = logging.getLogger(__name__)

# How many recent payloads each adapter keeps for inspection
SENT_HISTORY = 100


class LoggingAdapter(ChannelAdapter):
    """Logs every notification and reports success.

    The most recent payloads are kept in ``sent``, bounded by ``history``.
    """

    def __init__(self, channel: NotificationChannel, history: int = SENT_HISTORY):
        self.channel = channel
        self.sent: deque[NotificationPayload] = deque(maxlen=history)
        self._counter = itertools.count(1)

    async def send(self, payload: NotificationPayload) -> SendResult:
        logger.info(
            f"[{self.channel.value}] to={payload.recipient} "
            f"subject={payload.subject!r} body={payload.body[:200]!r}"
        )
        self.sent.append(payload)
        provider_id = f"log-{int(time.time() * 1000)}-{next(self._counter)}"
        return SendResult(success=True, provider_id=provider_id)
