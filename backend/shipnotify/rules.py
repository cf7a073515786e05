"""Notification rules - match domain events and expand them into notifications."""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import selectinload

from .channels.base import NotificationPayload
from .models import NotificationChannel, NotificationRule
from .notification_queue import NotificationQueue
from .templates import TemplateRenderError, render_template

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class EvaluationResult:
    """Counts reported by one rule evaluation pass."""

    rules_matched: int = 0
    notifications_queued: int = 0


def resolve_path(data: Any, path: str) -> Any:
    """Look up a dot path such as ``current.status`` or ``events.0.message``.

    Returns the module-level ``_MISSING`` sentinel when any segment is absent.
    """
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _strict_equal(actual: Any, expected: Any) -> bool:
    # JSON semantics: true != 1, 1 == 1.0
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    if isinstance(actual, dict) and isinstance(expected, dict):
        return actual.keys() == expected.keys() and all(
            _strict_equal(actual[k], expected[k]) for k in actual
        )
    if isinstance(actual, list) and isinstance(expected, list):
        return len(actual) == len(expected) and all(
            _strict_equal(a, e) for a, e in zip(actual, expected)
        )
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return actual == expected
    return type(actual) is type(expected) and actual == expected


def matches_filter(rule_filter: Any, payload: dict) -> bool:
    """Check an event payload against a rule filter.

    The filter is a flat mapping of dot paths to expected values, all of
    which must be strictly equal. A missing path never matches. An absent
    or non-mapping filter matches every event (fail-open), so a
    misconfigured rule still notifies rather than silently dropping.
    """
    if not rule_filter or not isinstance(rule_filter, dict):
        return True

    for path, expected in rule_filter.items():
        actual = resolve_path(payload, str(path))
        if actual is _MISSING or not _strict_equal(actual, expected):
            return False
    return True


class RuleRepository:
    """Read-only access to notification rules."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_enabled(self, trigger_event: str) -> list[NotificationRule]:
        """Enabled rules for a trigger, with template and recipients loaded."""
        db = self.session_factory()
        try:
            rules = (
                db.query(NotificationRule)
                .options(
                    selectinload(NotificationRule.template),
                    selectinload(NotificationRule.recipients),
                )
                .filter(
                    NotificationRule.trigger_event == trigger_event,
                    NotificationRule.enabled.is_(True),
                )
                .order_by(NotificationRule.created_at, NotificationRule.name)
                .all()
            )
            db.expunge_all()
            return rules
        finally:
            db.close()


class RuleEvaluator:
    """Turns a domain event into queued notifications."""

    def __init__(self, repository: RuleRepository, queue: NotificationQueue):
        self.repository = repository
        self.queue = queue

    def evaluate(
        self, trigger_event: str, event_id: str, payload: dict
    ) -> EvaluationResult:
        """Match rules for ``trigger_event`` and enqueue one notification per recipient.

        A rule that fails to render is logged and skipped.

        Args:
            trigger_event: Event topic
            event_id: Queue id of the triggering event
            payload: Event payload, used for filtering and rendering

        Returns:
            EvaluationResult with matched rule and inserted notification counts
        """
        result = EvaluationResult()

        for rule in self.repository.find_enabled(trigger_event):
            if not matches_filter(rule.filter, payload):
                logger.debug(f"Rule {rule.name} filtered out for {trigger_event}")
                continue

            result.rules_matched += 1
            try:
                payloads = self._build_payloads(rule, trigger_event, event_id, payload)
            except (TemplateRenderError, ValueError, AttributeError) as e:
                logger.error(f"Rule {rule.name} skipped for event {event_id}: {e}")
                continue

            # Store errors propagate so the event is retried; dedupe keys
            # absorb the notifications already queued.
            if payloads:
                result.notifications_queued += self.queue.enqueue(
                    payloads, rule_id=rule.id, event_id=event_id
                )

        logger.info(
            f"Evaluated {trigger_event} ({event_id}): "
            f"{result.rules_matched} rules matched, "
            f"{result.notifications_queued} notifications queued"
        )
        return result

    def _build_payloads(
        self, rule: NotificationRule, trigger_event: str, event_id: str, payload: dict
    ) -> list[NotificationPayload]:
        template = rule.template
        subject = render_template(template.subject, payload) if template.subject else None
        body = render_template(template.body, payload)

        payloads = []
        for recipient in rule.recipients:
            payloads.append(
                NotificationPayload(
                    channel=NotificationChannel(recipient.channel),
                    recipient=recipient.target,
                    subject=subject,
                    body=body,
                    metadata={
                        "ruleId": rule.id,
                        "templateId": template.id,
                        "eventId": event_id,
                        "triggerEvent": trigger_event,
                        "recipientMetadata": recipient.metadata_json,
                        "templateMetadata": template.metadata_json,
                    },
                    dedupe_key=f"notify:{event_id}:{rule.id}:{recipient.id}",
                )
            )
        return payloads
