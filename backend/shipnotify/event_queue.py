"""Topic-partitioned queue of domain events."""

import logging
from typing import Iterable, Optional

from .events import EventMessage, QueuedEvent
from .models import EventQueueItem
from .queue import ClaimOptions, TaskQueue

logger = logging.getLogger(__name__)


class EventQueue(TaskQueue):
    """Durable queue of domain events, claimed per topic."""

    model = EventQueueItem
    partition_field = "topic"
    name = "event_queue"

    def enqueue(self, events: Iterable[EventMessage], session=None) -> int:
        """Enqueue events. Events whose dedupe_key already exists are skipped.

        Pass ``session`` to enqueue inside the caller's transaction.

        Returns:
            Number of events inserted
        """
        rows = []
        for event in events:
            row = {
                "topic": event.topic,
                "payload": event.payload,
                "metadata": event.metadata,
                "dedupe_key": event.dedupe_key,
            }
            if event.scheduled_for is not None:
                row["available_at"] = event.scheduled_for
            if event.max_attempts is not None:
                row["max_attempts"] = event.max_attempts
            rows.append(row)
        return self._enqueue_rows(rows, session=session)

    def claim(
        self, topic: str, options: Optional[ClaimOptions] = None
    ) -> list[QueuedEvent]:
        return super().claim(topic, options)

    def _snapshot(self, row: EventQueueItem) -> QueuedEvent:
        return QueuedEvent(
            id=row.id,
            topic=row.topic,
            payload=row.payload or {},
            status=row.status,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            available_at=row.available_at,
            locked_at=row.locked_at,
            last_error=row.last_error,
            dedupe_key=row.dedupe_key,
            metadata=row.metadata_json or {},
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
