"""Domain event types for shipment notifications."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class ShipmentTopic(Enum):
    """Topics emitted when shipment state changes."""

    CREATED = "shipment.created"
    UPDATED = "shipment.updated"
    STATUS_CHANGED = "shipment.status_changed"
    DELIVERED = "shipment.delivered"
    EXCEPTION = "shipment.exception"


# Fields whose change is worth a shipment.updated event.
TRACKED_FIELDS = (
    "carrier",
    "poNumber",
    "supplier",
    "shippedDate",
    "estimatedDelivery",
    "deliveredDate",
)


@dataclass
class EventMessage:
    """A domain event ready to be enqueued.

    Attributes:
        topic: Event topic, e.g. "shipment.status_changed"
        payload: JSON-serializable event data
        dedupe_key: Optional idempotency key, unique across the queue
        scheduled_for: Earliest time the event may be claimed
        max_attempts: Override of the queue's default attempt budget
        metadata: Free-form trace data
    """

    topic: str
    payload: dict
    dedupe_key: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    max_attempts: Optional[int] = None
    metadata: Optional[dict] = None


@dataclass
class QueuedEvent:
    """An event row as seen by a worker after claiming it."""

    id: str
    topic: str
    payload: dict
    status: str
    attempts: int
    max_attempts: int
    available_at: datetime
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    dedupe_key: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _fields_digest(snapshot: dict) -> str:
    tracked = {f: snapshot.get(f) for f in TRACKED_FIELDS}
    encoded = json.dumps(tracked, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def shipment_snapshot(shipment) -> dict:
    """Serialize a shipment into the shape carried by event payloads."""
    return {
        "shipmentId": shipment.id,
        "trackingNumber": shipment.tracking_number,
        "status": shipment.status,
        "carrier": shipment.carrier,
        "poNumber": shipment.po_number,
        "supplier": shipment.supplier,
        "shippedDate": _iso(shipment.shipped_date),
        "estimatedDelivery": _iso(shipment.estimated_delivery),
        "deliveredDate": _iso(shipment.delivered_date),
        "lastChecked": _iso(shipment.last_checked),
    }


def build_shipment_events(
    previous: Optional[dict],
    current: dict,
    fingerprint: str = "",
) -> list[EventMessage]:
    """Derive domain events from a before/after pair of shipment snapshots.

    Nothing is emitted when neither the status nor any tracked field
    changed, so repeated polling of an unchanged shipment stays silent.

    Args:
        previous: Snapshot before the update, or None for a new shipment
        current: Snapshot after the update
        fingerprint: Extra dedupe discriminator, e.g. latest carrier event time

    Returns:
        Events in emission order
    """
    previous_status = previous["status"] if previous else None
    current_status = current["status"]

    payload = {
        "shipmentId": current["shipmentId"],
        "trackingNumber": current["trackingNumber"],
        "status": current_status,
        "previousStatus": previous_status,
        "current": current,
        "previous": previous,
    }

    topics = []
    if previous is None:
        topics.append(ShipmentTopic.CREATED)
    elif any(previous.get(f) != current.get(f) for f in TRACKED_FIELDS):
        topics.append(ShipmentTopic.UPDATED)

    # String comparison of persisted vs freshly mapped status
    if previous_status != current_status:
        topics.append(ShipmentTopic.STATUS_CHANGED)
        if current_status == "delivered":
            topics.append(ShipmentTopic.DELIVERED)
        if current_status == "exception":
            topics.append(ShipmentTopic.EXCEPTION)

    events = []
    for topic in topics:
        dedupe_key = (
            f"{topic.value}:{current['shipmentId']}:{previous_status}:{current_status}"
        )
        if topic is ShipmentTopic.UPDATED:
            dedupe_key = f"{dedupe_key}:{_fields_digest(current)}"
        if fingerprint:
            dedupe_key = f"{dedupe_key}:{fingerprint}"
        events.append(
            EventMessage(topic=topic.value, payload=dict(payload), dedupe_key=dedupe_key)
        )
    return events
