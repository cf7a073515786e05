"""Wiring of queues, rules, handlers and adapters into one container."""

from dataclasses import dataclass
from datetime import timedelta

from .channels import ChannelRegistry, build_channel_registry
from .config import Settings
from .event_queue import EventQueue
from .handlers import EventHandlerRegistry, register_default_handlers
from .models import utcnow
from .notification_queue import NotificationQueue
from .queue import ClaimOptions, RetryPolicy
from .reconciliation import ShipmentReconciler
from .rules import RuleEvaluator, RuleRepository


@dataclass
class Services:
    """Everything a dispatch job or request handler needs."""

    settings: Settings
    event_queue: EventQueue
    notification_queue: NotificationQueue
    handlers: EventHandlerRegistry
    channels: ChannelRegistry
    evaluator: RuleEvaluator
    reconciler: ShipmentReconciler
    event_options: ClaimOptions
    notification_options: ClaimOptions


def build_services(
    settings: Settings,
    session_factory,
    clock=utcnow,
    channels: ChannelRegistry = None,
) -> Services:
    """Build the service graph from settings.

    Args:
        settings: Application settings
        session_factory: Callable returning a new SQLAlchemy session
        clock: Source of naive UTC timestamps
        channels: Adapter registry override; built from settings if omitted
    """
    retry_policy = RetryPolicy(
        base_delay=timedelta(seconds=settings.retry_base_delay_seconds),
        max_delay=timedelta(seconds=settings.retry_max_delay_seconds),
        jitter=settings.retry_jitter,
    )
    queue_kwargs = dict(
        clock=clock,
        max_attempts=settings.max_attempts,
        visibility_timeout_ms=settings.visibility_timeout_ms,
        retry_policy=retry_policy,
    )
    event_queue = EventQueue(
        session_factory, batch_size=settings.event_batch_size, **queue_kwargs
    )
    notification_queue = NotificationQueue(
        session_factory, batch_size=settings.notification_batch_size, **queue_kwargs
    )

    evaluator = RuleEvaluator(RuleRepository(session_factory), notification_queue)
    handlers = register_default_handlers(EventHandlerRegistry(), evaluator)

    return Services(
        settings=settings,
        event_queue=event_queue,
        notification_queue=notification_queue,
        handlers=handlers,
        channels=channels or build_channel_registry(settings),
        evaluator=evaluator,
        reconciler=ShipmentReconciler(session_factory, event_queue, clock=clock),
        event_options=ClaimOptions(batch_size=settings.event_batch_size),
        notification_options=ClaimOptions(
            batch_size=settings.notification_batch_size
        ),
    )
