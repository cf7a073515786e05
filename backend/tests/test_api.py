"""Tests for API endpoints."""

import hashlib
import hmac
import json

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from shipnotify.config import Settings
from shipnotify.events import EventMessage
from shipnotify.models import NotificationChannel
from shipnotify.services import build_services

DISPATCH_TOKEN = "dispatch-secret"
CARRIER_SECRET = "carrier-secret"


def sign(body: bytes) -> str:
    return hmac.new(CARRIER_SECRET.encode(), body, hashlib.sha256).hexdigest()


def carrier_payload(status="delivered", tracker_id="trk-1", number="1Z1"):
    return {
        "data": {
            "trackings": [
                {
                    "tracker": {"trackerId": tracker_id, "trackingNumber": number},
                    "shipment": {"statusMilestone": status},
                    "events": [
                        {
                            "datetime": "2026-01-15T11:00:00Z",
                            "status": status,
                            "statusDetails": "Delivered, dock 4",
                        }
                    ],
                }
            ]
        }
    }


@pytest.fixture
def services(session_factory, clock, logging_registry):
    settings = Settings(
        dispatch_token=DISPATCH_TOKEN,
        carrier_webhook_secret=CARRIER_SECRET,
        retry_jitter=0,
    )
    return build_services(settings, session_factory, clock=clock, channels=logging_registry)


@pytest.fixture
def client(services):
    """Create test client with the service container overridden."""
    from shipnotify.main import (
        carrier_webhook,
        dispatch_events_now,
        dispatch_notifications_now,
        enqueue_event,
        get_services,
        health_check,
        list_queue_tasks,
        queue_stats,
        require_dispatch_token,
        requeue_task,
    )

    test_app = FastAPI()

    # Add routes manually without lifespan to avoid scheduler and seeding
    test_app.get("/health")(health_check)
    test_app.post("/events")(enqueue_event)
    test_app.post("/dispatch/events", dependencies=[Depends(require_dispatch_token)])(
        dispatch_events_now
    )
    test_app.post(
        "/dispatch/notifications", dependencies=[Depends(require_dispatch_token)]
    )(dispatch_notifications_now)
    test_app.get("/queues/{queue}/stats")(queue_stats)
    test_app.get("/queues/{queue}/tasks")(list_queue_tasks)
    test_app.post("/queues/{queue}/tasks/{task_id}/requeue")(requeue_task)
    test_app.post("/webhooks/carrier")(carrier_webhook)

    test_app.dependency_overrides[get_services] = lambda: services

    with TestClient(test_app) as c:
        yield c


def auth():
    return {"X-Dispatch-Token": DISPATCH_TOKEN}


class TestHealthCheck:
    """Test health endpoint."""

    def test_health_returns_status(self, client):
        """Health check returns healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data


class TestEnqueueEvent:
    """Test POST /events."""

    def test_enqueue(self, client, services):
        response = client.post(
            "/events",
            json={"topic": "shipment.delivered", "payload": {"trackingNumber": "1Z1"}},
        )

        assert response.status_code == 200
        assert response.json() == {"enqueued": 1, "duplicate": False}
        assert services.event_queue.stats("shipment.delivered")["PENDING"] == 1

    def test_duplicate_dedupe_key(self, client):
        """A repeated dedupe_key is reported as a duplicate, not an error."""
        body = {"topic": "shipment.delivered", "payload": {}, "dedupe_key": "k1"}
        client.post("/events", json=body)

        response = client.post("/events", json=body)

        assert response.status_code == 200
        assert response.json() == {"enqueued": 0, "duplicate": True}

    def test_scheduled_for_with_offset(self, client, services, clock):
        """Aware timestamps are stored as naive UTC."""
        client.post(
            "/events",
            json={
                "topic": "shipment.delivered",
                "payload": {},
                "scheduled_for": "2026-01-15T09:00:00-05:00",
            },
        )

        task = services.event_queue.list_tasks()[0]
        assert task.available_at == clock().replace(hour=14)

    def test_validation(self, client):
        response = client.post("/events", json={"topic": "", "payload": {}})
        assert response.status_code == 422


class TestDispatch:
    """Test manual dispatch endpoints."""

    def test_requires_token(self, client):
        assert client.post("/dispatch/events").status_code == 401
        assert (
            client.post(
                "/dispatch/notifications", headers={"X-Dispatch-Token": "wrong"}
            ).status_code
            == 401
        )

    def test_dispatch_events(self, client, services):
        services.event_queue.enqueue(
            [EventMessage("shipment.delivered", {"trackingNumber": "1Z1"})]
        )

        response = client.post("/dispatch/events", headers=auth())

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["errors"] == 0
        delivered = [r for r in data["results"] if r["key"] == "shipment.delivered"]
        assert delivered == [{"key": "shipment.delivered", "processed": 1, "errors": 0}]

    def test_open_when_no_token_configured(self, client, services):
        services.settings.dispatch_token = ""
        response = client.post("/dispatch/notifications")
        assert response.status_code == 200
        assert response.json()["processed"] == 0


class TestQueueEndpoints:
    """Test queue inspection and triage."""

    def test_stats(self, client, services):
        services.event_queue.enqueue([EventMessage("shipment.delivered", {})])

        response = client.get("/queues/events/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["queue"] == "events"
        assert data["counts"] == {
            "PENDING": 1,
            "PROCESSING": 0,
            "COMPLETED": 0,
            "FAILED": 0,
        }

    def test_stats_by_channel(self, client):
        response = client.get("/queues/notifications/stats", params={"key": "EMAIL"})
        assert response.status_code == 200
        assert response.json()["key"] == "EMAIL"

    def test_unknown_queue(self, client):
        assert client.get("/queues/bogus/stats").status_code == 404

    def test_list_failed_tasks(self, client, services):
        services.event_queue.enqueue(
            [EventMessage("shipment.delivered", {}, max_attempts=1)]
        )
        task = services.event_queue.claim("shipment.delivered")[0]
        services.event_queue.mark_failed(task.id, "boom")

        response = client.get("/queues/events/tasks", params={"status": "failed"})

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["id"] == task.id
        assert data[0]["key"] == "shipment.delivered"
        assert data[0]["last_error"] == "boom"

    def test_list_bad_status(self, client):
        response = client.get("/queues/events/tasks", params={"status": "lost"})
        assert response.status_code == 400

    def test_requeue(self, client, services):
        services.event_queue.enqueue(
            [EventMessage("shipment.delivered", {}, max_attempts=1)]
        )
        task = services.event_queue.claim("shipment.delivered")[0]
        services.event_queue.mark_failed(task.id, "boom")

        response = client.post(f"/queues/events/tasks/{task.id}/requeue")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert services.event_queue.get(task.id).status == "PENDING"

    def test_requeue_not_failed(self, client, services):
        services.event_queue.enqueue([EventMessage("shipment.delivered", {})])
        task = services.event_queue.list_tasks()[0]

        response = client.post(f"/queues/events/tasks/{task.id}/requeue")
        assert response.status_code == 409

    def test_requeue_unknown(self, client):
        response = client.post("/queues/notifications/tasks/missing/requeue")
        assert response.status_code == 404


class TestCarrierWebhook:
    """Test POST /webhooks/carrier."""

    def post(self, client, payload, signature=None):
        body = json.dumps(payload).encode() if not isinstance(payload, bytes) else payload
        return client.post(
            "/webhooks/carrier",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Carrier-Signature": signature if signature is not None else sign(body),
            },
        )

    def test_rejects_bad_signature(self, client):
        response = self.post(client, carrier_payload(), signature="forged")
        assert response.status_code == 401

    def test_rejects_invalid_json(self, client):
        assert self.post(client, b"{not json").status_code == 400

    def test_rejects_non_object(self, client):
        assert self.post(client, [1, 2]).status_code == 400

    def test_rejects_missing_ids(self, client):
        payload = {"data": {"trackings": [{"tracker": {"trackerId": "trk-1"}}]}}
        assert self.post(client, payload).status_code == 400

    @pytest.mark.parametrize(
        "payload",
        [
            {"data": "trackings"},
            {"data": {"trackings": {"tracker": {}}}},
            {"data": {"trackings": ["1Z1"]}},
            {"data": {"trackings": [{"tracker": "trk-1"}]}},
            {
                "data": {
                    "trackings": [
                        {"tracker": {"trackerId": "t", "trackingNumber": "n"}, "events": [1]}
                    ]
                }
            },
        ],
    )
    def test_rejects_malformed_shapes(self, client, payload):
        """Wrongly typed sections are a 400, not a server error."""
        assert self.post(client, payload).status_code == 400

    def test_bad_tracking_rejects_whole_batch(self, client, services):
        """Nothing is applied when any tracking in the batch is invalid."""
        services.reconciler.register_shipment("1Z1", carrier="ups", tracker_id="trk-1")
        payload = carrier_payload()
        payload["data"]["trackings"].append({"tracker": {"trackerId": "trk-2"}})

        response = self.post(client, payload)

        assert response.status_code == 400
        assert "trackings[1]" in response.json()["detail"]
        assert services.event_queue.stats("shipment.delivered")["PENDING"] == 0

    def test_unknown_shipment(self, client):
        response = self.post(client, carrier_payload(number="1Z404", tracker_id="trk-404"))

        assert response.status_code == 200
        assert response.json()[0]["found"] is False

    def test_reconciles_and_notifies(self, client, services, make_rule):
        """A signed carrier update flows through to a sent notification."""
        make_rule(
            name="receiving-delivered",
            trigger="shipment.delivered",
            body="{{ trackingNumber }} delivered",
        )
        services.reconciler.register_shipment("1Z1", carrier="ups", tracker_id="trk-1")

        response = self.post(client, carrier_payload())

        assert response.status_code == 200
        result = response.json()[0]
        assert result["found"] is True
        assert result["status_changed"] is True
        assert result["old_status"] == "pending"
        assert result["new_status"] == "delivered"
        assert result["events_recorded"] == 1

        client.post("/dispatch/events", headers=auth())
        response = client.post("/dispatch/notifications", headers=auth())

        assert response.json()["processed"] == 1
        sent = services.channels.get(NotificationChannel.EMAIL).sent
        assert [p.body for p in sent] == ["1Z1 delivered"]

        # Carrier redelivery is absorbed
        response = self.post(client, carrier_payload())
        assert response.json()[0]["events_enqueued"] == 0
