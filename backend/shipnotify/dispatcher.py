"""Dispatch loops - claim a batch, process each task, acknowledge outcomes.

Each call is one short batch suitable for a scheduler tick. Tasks in a
batch are processed sequentially. A failing task is marked failed right
away and never aborts the rest of the batch; successes are acknowledged
together with one ``mark_completed`` call at the end.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .channels import ChannelRegistry
from .event_queue import EventQueue
from .handlers import EventHandlerRegistry, HandlerResult
from .notification_queue import NotificationQueue
from .queue import ClaimOptions

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Counts for one dispatch call.

    Attributes:
        key: Topic or channel that was dispatched
        processed: Tasks completed successfully
        errors: Tasks marked failed
    """

    key: str
    processed: int = 0
    errors: int = 0


def _error_message(e: Exception) -> str:
    return str(e) or e.__class__.__name__


async def dispatch_events(
    queue: EventQueue,
    handlers: EventHandlerRegistry,
    topic: str,
    options: Optional[ClaimOptions] = None,
) -> DispatchResult:
    """Claim and handle one batch of events for ``topic``.

    Nothing is claimed when no handler is registered for the topic.
    """
    result = DispatchResult(key=topic)
    handler = handlers.get(topic)
    if handler is None:
        logger.debug(f"No handler registered for {topic}, skipping dispatch")
        return result

    events = queue.claim(topic, options)
    if not events:
        return result

    completed = []
    for event in events:
        try:
            outcome = await handler(event)
        except Exception as e:
            outcome = HandlerResult(success=False, error=_error_message(e))

        if outcome.success:
            completed.append(event.id)
        else:
            result.errors += 1
            queue.mark_failed(event.id, outcome.error or "Handler failed")

    if completed:
        queue.mark_completed(completed)
    result.processed = len(completed)

    logger.info(
        f"Dispatched {topic}: {result.processed} processed, {result.errors} errors"
    )
    return result


async def dispatch_notifications(
    queue: NotificationQueue,
    channels: ChannelRegistry,
    channel,
    options: Optional[ClaimOptions] = None,
) -> DispatchResult:
    """Claim and deliver one batch of notifications for ``channel``."""
    key = getattr(channel, "value", channel)
    result = DispatchResult(key=key)

    notifications = queue.claim(channel, options)
    if not notifications:
        return result

    completed = []
    provider_ids = {}
    for notification in notifications:
        try:
            sent = await channels.send(notification.to_payload())
            error = sent.error or "Send failed"
        except Exception as e:
            sent = None
            error = _error_message(e)

        if sent is not None and sent.success:
            completed.append(notification.id)
            if sent.provider_id:
                provider_ids[notification.id] = sent.provider_id
        else:
            result.errors += 1
            queue.mark_failed(notification.id, error)

    if completed:
        queue.mark_completed(completed, provider_ids=provider_ids)
    result.processed = len(completed)

    logger.info(
        f"Dispatched {key} notifications: {result.processed} sent, "
        f"{result.errors} errors"
    )
    return result


async def dispatch_all_topics(
    queue: EventQueue,
    handlers: EventHandlerRegistry,
    options: Optional[ClaimOptions] = None,
) -> list[DispatchResult]:
    """One dispatch pass over every topic with a registered handler."""
    return [
        await dispatch_events(queue, handlers, topic, options)
        for topic in handlers.topics()
    ]


async def dispatch_all_channels(
    queue: NotificationQueue,
    channels: ChannelRegistry,
    options: Optional[ClaimOptions] = None,
) -> list[DispatchResult]:
    """One dispatch pass over every registered channel."""
    return [
        await dispatch_notifications(queue, channels, channel, options)
        for channel in channels.channels()
    ]
