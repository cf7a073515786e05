"""Channel-partitioned queue of rendered notifications."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .channels.base import NotificationPayload
from .models import (
    NotificationChannel,
    NotificationLog,
    NotificationQueueItem,
)
from .queue import ClaimOptions, TaskQueue

logger = logging.getLogger(__name__)

LOG_STATUS_SENT = "SENT"
LOG_STATUS_FAILED = "FAILED"


@dataclass
class QueuedNotification:
    """A notification row as seen by a worker after claiming it."""

    id: str
    channel: str
    recipient: str
    body: str
    status: str
    attempts: int
    max_attempts: int
    available_at: datetime
    subject: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    rule_id: Optional[str] = None
    event_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
    provider_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_payload(self) -> NotificationPayload:
        metadata = dict(self.metadata)
        metadata.setdefault("notificationId", self.id)
        return NotificationPayload(
            channel=NotificationChannel(self.channel),
            recipient=self.recipient,
            subject=self.subject,
            body=self.body,
            metadata=metadata,
            dedupe_key=self.dedupe_key or self.id,
        )


def _channel_value(channel) -> str:
    return channel.value if isinstance(channel, NotificationChannel) else str(channel)


class NotificationQueue(TaskQueue):
    """Durable queue of notifications, claimed per channel.

    Completion records the send in ``notification_log``; so does a
    permanent failure, so the log is a full audit of outcomes.
    """

    model = NotificationQueueItem
    partition_field = "channel"
    name = "notification_queue"

    def enqueue(
        self,
        payloads: Iterable[NotificationPayload],
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> int:
        """Enqueue rendered notifications.

        Payloads whose dedupe_key is already queued are skipped.

        Returns:
            Number of notifications inserted
        """
        rows = []
        for payload in payloads:
            row = {
                "channel": _channel_value(payload.channel),
                "recipient": payload.recipient,
                "subject": payload.subject,
                "body": payload.body,
                "metadata": payload.metadata,
                "rule_id": rule_id,
                "event_id": event_id,
                "dedupe_key": payload.dedupe_key,
            }
            if scheduled_for is not None:
                row["available_at"] = scheduled_for
            if max_attempts is not None:
                row["max_attempts"] = max_attempts
            rows.append(row)
        return self._enqueue_rows(rows)

    def claim(
        self, channel, options: Optional[ClaimOptions] = None
    ) -> list[QueuedNotification]:
        return super().claim(_channel_value(channel), options)

    def stats(self, key=None) -> dict[str, int]:
        return super().stats(_channel_value(key) if key is not None else None)

    def _completion_values(self, now: datetime) -> dict:
        return {"sent_at": now}

    def _after_completed(self, session, ids, now, provider_ids) -> None:
        rows = session.query(NotificationQueueItem).filter(
            NotificationQueueItem.id.in_(ids)
        )
        for row in rows:
            provider_id = provider_ids.get(row.id)
            if provider_id:
                row.provider_id = provider_id
            session.add(self._log_entry(row, LOG_STATUS_SENT, now))
        logger.info(f"{self.name}: logged {len(ids)} sent notifications")

    def _after_permanent_failure(self, session, row, now) -> None:
        session.add(self._log_entry(row, LOG_STATUS_FAILED, now))

    @staticmethod
    def _log_entry(row: NotificationQueueItem, status: str, now: datetime):
        return NotificationLog(
            queue_id=row.id,
            channel=row.channel,
            recipient=row.recipient,
            subject=row.subject,
            body=row.body,
            status=status,
            provider_id=row.provider_id,
            error=row.last_error if status == LOG_STATUS_FAILED else None,
            metadata_json=row.metadata_json,
            sent_at=now,
        )

    def _snapshot(self, row: NotificationQueueItem) -> QueuedNotification:
        return QueuedNotification(
            id=row.id,
            channel=row.channel,
            recipient=row.recipient,
            subject=row.subject,
            body=row.body,
            status=row.status,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            available_at=row.available_at,
            metadata=row.metadata_json or {},
            rule_id=row.rule_id,
            event_id=row.event_id,
            dedupe_key=row.dedupe_key,
            locked_at=row.locked_at,
            last_error=row.last_error,
            sent_at=row.sent_at,
            provider_id=row.provider_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def log_entries(self, limit: int = 50) -> list[NotificationLog]:
        """Most recent notification_log rows, newest first."""
        db = self.session_factory()
        try:
            rows = (
                db.query(NotificationLog)
                .order_by(NotificationLog.sent_at.desc())
                .limit(limit)
                .all()
            )
            db.expunge_all()
            return rows
        finally:
            db.close()
