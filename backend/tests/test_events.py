"""Tests for shipment event derivation."""

from datetime import datetime

from shipnotify.events import (
    ShipmentTopic,
    build_shipment_events,
    shipment_snapshot,
)
from shipnotify.models import Shipment


def snapshot(**overrides) -> dict:
    base = {
        "shipmentId": 7,
        "trackingNumber": "1Z999AA10123456784",
        "status": "in_transit",
        "carrier": "ups",
        "poNumber": "PO-1001",
        "supplier": "Acme",
        "shippedDate": "2026-01-10T09:00:00",
        "estimatedDelivery": "2026-01-17T00:00:00",
        "deliveredDate": None,
        "lastChecked": "2026-01-15T12:00:00",
    }
    base.update(overrides)
    return base


def topics(events) -> list[str]:
    return [e.topic for e in events]


class TestShipmentSnapshot:
    """Test shipment serialization."""

    def test_camel_case_iso_dates(self):
        shipment = Shipment(
            id=7,
            tracking_number="1Z999",
            status="in_transit",
            carrier="ups",
            po_number="PO-1",
            shipped_date=datetime(2026, 1, 10, 9, 0),
        )

        result = shipment_snapshot(shipment)

        assert result["shipmentId"] == 7
        assert result["trackingNumber"] == "1Z999"
        assert result["poNumber"] == "PO-1"
        assert result["shippedDate"] == "2026-01-10T09:00:00"
        assert result["deliveredDate"] is None


class TestBuildShipmentEvents:
    """Test which topics a change produces."""

    def test_new_shipment(self):
        """A shipment with no previous snapshot is created, and its status changed."""
        events = build_shipment_events(None, snapshot(status="pending"))

        assert topics(events) == ["shipment.created", "shipment.status_changed"]
        assert events[0].payload["previousStatus"] is None
        assert events[0].payload["previous"] is None
        assert events[0].dedupe_key == "shipment.created:7:None:pending"

    def test_no_change_emits_nothing(self):
        """Polling an unchanged shipment is silent, even if lastChecked moved."""
        previous = snapshot()
        current = snapshot(lastChecked="2026-01-15T13:00:00")
        assert build_shipment_events(previous, current) == []

    def test_status_change(self):
        events = build_shipment_events(snapshot(), snapshot(status="out_for_delivery"))

        assert topics(events) == ["shipment.status_changed"]
        payload = events[0].payload
        assert payload["status"] == "out_for_delivery"
        assert payload["previousStatus"] == "in_transit"
        assert payload["current"]["status"] == "out_for_delivery"
        assert payload["previous"]["status"] == "in_transit"
        assert events[0].dedupe_key == (
            "shipment.status_changed:7:in_transit:out_for_delivery"
        )

    def test_delivered(self):
        events = build_shipment_events(
            snapshot(), snapshot(status="delivered", deliveredDate="2026-01-16T10:00:00")
        )
        assert topics(events) == [
            "shipment.updated",
            "shipment.status_changed",
            "shipment.delivered",
        ]

    def test_exception(self):
        events = build_shipment_events(snapshot(), snapshot(status="exception"))
        assert topics(events) == ["shipment.status_changed", "shipment.exception"]

    def test_tracked_field_change_only(self):
        """A new ETA with the same status is an update only."""
        events = build_shipment_events(
            snapshot(), snapshot(estimatedDelivery="2026-01-18T00:00:00")
        )

        assert topics(events) == [ShipmentTopic.UPDATED.value]
        assert events[0].dedupe_key.startswith("shipment.updated:7:in_transit:in_transit:")

    def test_distinct_updates_get_distinct_keys(self):
        """Two different ETA changes do not dedupe against each other."""
        first = build_shipment_events(
            snapshot(), snapshot(estimatedDelivery="2026-01-18T00:00:00")
        )
        second = build_shipment_events(
            snapshot(), snapshot(estimatedDelivery="2026-01-19T00:00:00")
        )
        assert first[0].dedupe_key != second[0].dedupe_key

    def test_fingerprint_extends_dedupe_key(self):
        """A later carrier scan makes a repeated transition a new event."""
        events = build_shipment_events(
            snapshot(), snapshot(status="exception"), fingerprint="2026-01-15T15:30:00"
        )
        assert events[0].dedupe_key == (
            "shipment.status_changed:7:in_transit:exception:2026-01-15T15:30:00"
        )

    def test_payloads_are_independent(self):
        events = build_shipment_events(snapshot(), snapshot(status="delivered"))
        events[0].payload["status"] = "mutated"
        assert events[1].payload["status"] == "delivered"
