"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shipnotify.channels import ChannelRegistry, LoggingAdapter
from shipnotify.event_queue import EventQueue
from shipnotify.models import (
    Base,
    NotificationChannel,
    NotificationRecipient,
    NotificationRule,
    NotificationTemplate,
    Shipment,
)
from shipnotify.notification_queue import NotificationQueue
from shipnotify.queue import RetryPolicy
from shipnotify.rules import RuleEvaluator, RuleRepository


class FakeClock:
    """Controllable clock returning naive UTC datetimes."""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    """In-memory database shared across sessions."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Session for arranging and inspecting rows directly."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def retry_policy():
    """Deterministic backoff: 30s, 60s, 120s ... capped at 15 minutes."""
    return RetryPolicy(
        base_delay=timedelta(seconds=30), max_delay=timedelta(minutes=15), jitter=0
    )


@pytest.fixture
def event_queue(session_factory, clock, retry_policy):
    return EventQueue(session_factory, clock=clock, retry_policy=retry_policy)


@pytest.fixture
def notification_queue(session_factory, clock, retry_policy):
    return NotificationQueue(session_factory, clock=clock, retry_policy=retry_policy)


@pytest.fixture
def evaluator(session_factory, notification_queue):
    return RuleEvaluator(RuleRepository(session_factory), notification_queue)


@pytest.fixture
def logging_registry():
    """Registry with a LoggingAdapter for every channel."""
    registry = ChannelRegistry()
    for channel in NotificationChannel:
        registry.register(LoggingAdapter(channel))
    return registry


@pytest.fixture
def make_rule(db_session):
    """Create a rule with a template and recipients."""

    def _make_rule(
        name="status-changes",
        trigger="shipment.status_changed",
        body="Shipment {{ trackingNumber }} is {{ status }}",
        subject="Update for {{ trackingNumber }}",
        filter=None,
        enabled=True,
        recipients=((NotificationChannel.EMAIL, "ops@example.com"),),
    ):
        template = NotificationTemplate(
            name=f"{name}-template",
            subject=subject,
            body=body,
            metadata_json={"locale": "en"},
        )
        rule = NotificationRule(
            name=name,
            trigger_event=trigger,
            filter=filter,
            template=template,
            enabled=enabled,
        )
        for channel, target in recipients:
            rule.recipients.append(
                NotificationRecipient(channel=channel.value, target=target)
            )
        db_session.add(rule)
        db_session.commit()
        return rule

    return _make_rule


@pytest.fixture
def make_shipment(db_session, clock):
    """Create a stored shipment."""

    def _make_shipment(tracking_number="1Z999AA10123456784", **kwargs):
        kwargs.setdefault("status", "pending")
        kwargs.setdefault("created_at", clock())
        kwargs.setdefault("updated_at", clock())
        shipment = Shipment(tracking_number=tracking_number, **kwargs)
        db_session.add(shipment)
        db_session.commit()
        return shipment

    return _make_shipment
