"""Shipment status reconciliation.

Applies carrier tracking data to a stored shipment, records new carrier
scan events, and enqueues domain events when the shipment changed. The
shipment update, the scan events and the domain events commit in one
transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import or_

from .event_queue import EventQueue
from .events import build_shipment_events, shipment_snapshot
from .models import Shipment, TrackingEvent, utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
IN_TRANSIT = "in_transit"
OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERED = "delivered"
EXCEPTION = "exception"

SHIPMENT_STATUSES = (PENDING, IN_TRANSIT, OUT_FOR_DELIVERY, DELIVERED, EXCEPTION)

CARRIER_STATUS_MAP = {
    "info_received": PENDING,
    "pending": PENDING,
    "unknown": PENDING,
    "in_transit": IN_TRANSIT,
    "available_for_pickup": IN_TRANSIT,
    "out_for_delivery": OUT_FOR_DELIVERY,
    "delivered": DELIVERED,
    "delivery_delayed": EXCEPTION,
    "delivery_failed": EXCEPTION,
    "failed_attempt": EXCEPTION,
    "exception": EXCEPTION,
    "expired": EXCEPTION,
}


def map_carrier_status(raw: Optional[str]) -> str:
    """Map a carrier status to an internal status. Unknown maps to pending."""
    if not raw:
        return PENDING
    return CARRIER_STATUS_MAP.get(str(raw).strip().lower(), PENDING)


@dataclass
class CarrierEvent:
    """One carrier scan."""

    occurred_at: datetime
    description: str
    status: str
    location: Optional[str] = None


@dataclass
class TrackingUpdate:
    """Carrier tracking data mapped to shipment fields."""

    status: str
    tracker_id: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    shipped_date: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    events: list[CarrierEvent] = field(default_factory=list)

    @property
    def latest_event_time(self) -> Optional[datetime]:
        return max((e.occurred_at for e in self.events), default=None)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one tracking update."""

    found: bool
    status_changed: bool = False
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    events_recorded: int = 0
    events_enqueued: int = 0


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into naive UTC. Invalid input gives None."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable carrier timestamp: {value}")
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _format_location(location: Optional[dict]) -> Optional[str]:
    if not isinstance(location, dict) or not location.get("city"):
        return None
    parts = [location.get("city"), location.get("state"), location.get("postalCode")]
    return ", ".join(p for p in parts if p)


def parse_tracking(tracking: dict) -> TrackingUpdate:
    """Map a carrier tracking document to a TrackingUpdate.

    Expects the tracker/shipment/events layout carrier webhooks deliver:
    ``tracker.trackerId``, ``shipment.statusMilestone``,
    ``shipment.delivery.estimatedDeliveryDate`` and so on. Scans without a
    usable timestamp are dropped, since they cannot be told apart on
    redelivery.
    """
    tracker = tracking.get("tracker") or {}
    shipment = tracking.get("shipment") or {}
    delivery = shipment.get("delivery") or {}
    courier_codes = tracker.get("courierCode") or []

    events = []
    for raw in tracking.get("events") or []:
        occurred_at = parse_datetime(raw.get("datetime") or raw.get("occurrenceDateTime"))
        if occurred_at is None:
            logger.warning(
                f"Skipping untimed scan for tracker {tracker.get('trackerId')}: "
                f"{raw.get('status')}"
            )
            continue
        events.append(
            CarrierEvent(
                occurred_at=occurred_at,
                description=raw.get("statusDetails") or raw.get("status") or "Status update",
                status=raw.get("status") or "unknown",
                location=_format_location(raw.get("location")),
            )
        )

    return TrackingUpdate(
        status=map_carrier_status(
            shipment.get("statusMilestone") or shipment.get("status") or "unknown"
        ),
        tracker_id=tracker.get("trackerId"),
        tracking_number=tracker.get("trackingNumber"),
        carrier=courier_codes[0] if courier_codes else None,
        shipped_date=parse_datetime(shipment.get("shipDate")),
        estimated_delivery=parse_datetime(delivery.get("estimatedDeliveryDate")),
        delivered_date=parse_datetime(delivery.get("actualDeliveryDate")),
        events=events,
    )


def _fingerprint(previous: dict, update: TrackingUpdate) -> str:
    """Dedupe discriminator for the events of one reconcile.

    The latest scan time identifies a carrier document, so a redelivered
    webhook maps to the same keys. Without scans, the previous check time
    stands in so that returning to a status a second time does not collide
    with the first transition.
    """
    if update.latest_event_time:
        return update.latest_event_time.isoformat()
    return f"checked-{previous['lastChecked']}"


class ShipmentReconciler:
    """Applies tracking updates to shipments and emits domain events."""

    def __init__(self, session_factory, event_queue: EventQueue, clock=utcnow):
        self.session_factory = session_factory
        self.event_queue = event_queue
        self.clock = clock

    def register_shipment(
        self,
        tracking_number: str,
        carrier: Optional[str] = None,
        po_number: Optional[str] = None,
        supplier: Optional[str] = None,
        tracker_id: Optional[str] = None,
    ) -> tuple[int, int]:
        """Store a new shipment and enqueue its creation events.

        Returns:
            (shipment id, number of events enqueued)
        """
        now = self.clock()
        db = self.session_factory()
        try:
            shipment = Shipment(
                tracking_number=tracking_number,
                tracker_id=tracker_id,
                carrier=carrier,
                po_number=po_number,
                supplier=supplier,
                status=PENDING,
                created_at=now,
                updated_at=now,
            )
            db.add(shipment)
            db.flush()
            messages = build_shipment_events(None, shipment_snapshot(shipment))
            enqueued = self.event_queue.enqueue(messages, session=db)
            shipment_id = shipment.id
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"Registered shipment {tracking_number} (id={shipment_id})")
        return shipment_id, enqueued

    def reconcile(
        self,
        tracker_id: Optional[str],
        tracking_number: Optional[str],
        tracking: dict,
    ) -> ReconcileResult:
        """Reconcile one carrier tracking document.

        Args:
            tracker_id: Carrier tracker id, matched first
            tracking_number: Fallback lookup key
            tracking: Raw tracking document

        Returns:
            ReconcileResult; ``found`` is False when no shipment matches
        """
        now = self.clock()
        update = parse_tracking(tracking)

        db = self.session_factory()
        try:
            shipment = self._find(db, tracker_id, tracking_number)
            if shipment is None:
                logger.warning(
                    f"Shipment not found for tracker {tracker_id} / "
                    f"tracking {tracking_number}"
                )
                return ReconcileResult(found=False)

            previous = shipment_snapshot(shipment)
            old_status = shipment.status

            self._apply(shipment, update, tracker_id, now)
            recorded = self._record_events(db, shipment, update.events)
            db.flush()

            current = shipment_snapshot(shipment)
            fingerprint = _fingerprint(previous, update)
            messages = build_shipment_events(previous, current, fingerprint=fingerprint)
            enqueued = self.event_queue.enqueue(messages, session=db)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        new_status = current["status"]
        status_changed = old_status != new_status
        if status_changed:
            logger.info(
                f"Status updated for {current['trackingNumber']}: "
                f"{old_status} -> {new_status}"
            )
        else:
            logger.info(f"No status change for {current['trackingNumber']} (still {new_status})")

        return ReconcileResult(
            found=True,
            status_changed=status_changed,
            old_status=old_status,
            new_status=new_status,
            events_recorded=recorded,
            events_enqueued=enqueued,
        )

    def _find(self, db, tracker_id, tracking_number) -> Optional[Shipment]:
        conditions = []
        if tracker_id:
            conditions.append(Shipment.tracker_id == tracker_id)
        if tracking_number:
            conditions.append(Shipment.tracking_number == tracking_number)
        if not conditions:
            return None
        matches = db.query(Shipment).filter(or_(*conditions)).all()
        # Prefer the tracker id match
        for shipment in matches:
            if tracker_id and shipment.tracker_id == tracker_id:
                return shipment
        return matches[0] if matches else None

    def _apply(self, shipment: Shipment, update: TrackingUpdate, tracker_id, now):
        shipment.status = update.status
        shipment.last_checked = now
        shipment.updated_at = now
        if tracker_id and not shipment.tracker_id:
            shipment.tracker_id = tracker_id
        if update.carrier and not shipment.carrier:
            shipment.carrier = update.carrier
        if update.shipped_date:
            shipment.shipped_date = update.shipped_date
        if update.estimated_delivery:
            shipment.estimated_delivery = update.estimated_delivery
        if update.delivered_date:
            shipment.delivered_date = update.delivered_date

    def _record_events(self, db, shipment: Shipment, events: list[CarrierEvent]) -> int:
        """Insert carrier events not yet stored for this shipment."""
        if not events:
            return 0

        seen = {
            (event_time, message)
            for event_time, message in db.query(
                TrackingEvent.event_time, TrackingEvent.message
            ).filter(TrackingEvent.shipment_id == shipment.id)
        }

        recorded = 0
        for event in events:
            key = (event.occurred_at, event.description)
            if key in seen:
                continue
            seen.add(key)
            db.add(
                TrackingEvent(
                    shipment_id=shipment.id,
                    status=event.status,
                    location=event.location,
                    message=event.description,
                    event_time=event.occurred_at,
                )
            )
            recorded += 1
        return recorded
