"""Event handlers - what happens when a domain event is dispatched."""

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from .events import QueuedEvent, ShipmentTopic
from .rules import RuleEvaluator

logger = logging.getLogger(__name__)


@dataclass
class HandlerResult:
    """Outcome of handling one event.

    Attributes:
        success: Whether the event was handled
        error: Failure reason, stored as the task's last_error
    """

    success: bool
    error: Optional[str] = None


EventHandler = Callable[
    [QueuedEvent], Union[Optional[HandlerResult], Awaitable[Optional[HandlerResult]]]
]


async def run_handler(handler: EventHandler, event: QueuedEvent) -> HandlerResult:
    """Invoke a sync or async handler; None means success."""
    result = handler(event)
    if inspect.isawaitable(result):
        result = await result
    return result if result is not None else HandlerResult(success=True)


class EventHandlerRegistry:
    """Topic to handler mapping. Several handlers may share a topic."""

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = {}

    def register(self, topic: str, handler: EventHandler) -> None:
        self._handlers.setdefault(topic, []).append(handler)

    def topics(self) -> list[str]:
        return list(self._handlers)

    def get(self, topic: str) -> Optional[EventHandler]:
        """Combined handler for ``topic``, or None if nothing is registered.

        Every handler runs; the event fails if any of them fails.
        """
        handlers = self._handlers.get(topic)
        if not handlers:
            return None

        async def combined(event: QueuedEvent) -> HandlerResult:
            errors = []
            for handler in handlers:
                name = getattr(handler, "__name__", repr(handler))
                try:
                    result = await run_handler(handler, event)
                except Exception as e:
                    logger.error(f"Handler {name} raised for {topic}: {e}")
                    errors.append(f"{name}: {e}")
                    continue
                if not result.success:
                    logger.warning(f"Handler {name} failed for {topic}: {result.error}")
                    errors.append(f"{name}: {result.error}")

            if errors:
                return HandlerResult(success=False, error="; ".join(errors))
            return HandlerResult(success=True)

        return combined


def log_handler(topic: str) -> EventHandler:
    """Handler that logs the event payload."""

    def handle(event: QueuedEvent) -> HandlerResult:
        logger.info(f"[event] {topic} {json.dumps(event.payload, default=str)}")
        return HandlerResult(success=True)

    handle.__name__ = f"log_{topic}"
    return handle


def rule_handler(evaluator: RuleEvaluator) -> EventHandler:
    """Handler that expands the event into notifications via the rule evaluator."""

    def handle(event: QueuedEvent) -> HandlerResult:
        evaluator.evaluate(event.topic, event.id, event.payload)
        return HandlerResult(success=True)

    handle.__name__ = "evaluate_rules"
    return handle


def register_default_handlers(
    registry: EventHandlerRegistry, evaluator: RuleEvaluator
) -> EventHandlerRegistry:
    """Log and evaluate rules for every shipment topic."""
    for topic in ShipmentTopic:
        registry.register(topic.value, log_handler(topic.value))
        registry.register(topic.value, rule_handler(evaluator))
    return registry
