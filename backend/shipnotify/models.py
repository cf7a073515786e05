"""SQLAlchemy models for the shipment notification service."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    create_engine,
    Column,
    String,
    Boolean,
    Integer,
    DateTime,
    JSON,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .config import get_settings

settings = get_settings()
engine = create_engine(settings.database_url, echo=settings.sql_echo)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, Enum):
    """Lifecycle of a queued task."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class NotificationChannel(str, Enum):
    """Delivery mechanisms a notification can be routed to."""

    EMAIL = "EMAIL"
    SLACK = "SLACK"
    WEBHOOK = "WEBHOOK"
    SMS = "SMS"


class EventQueueItem(Base):
    """Domain event waiting to be handled, partitioned by topic."""

    __tablename__ = "event_queue"
    __table_args__ = (
        Index("ix_event_queue_claim", "topic", "status", "available_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    topic = Column(String, nullable=False)  # "shipment.status_changed"
    payload = Column(JSON, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    status = Column(String, nullable=False, default=TaskStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    dedupe_key = Column(String, nullable=True, unique=True)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    locked_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class NotificationQueueItem(Base):
    """Rendered notification waiting to be delivered, partitioned by channel."""

    __tablename__ = "notification_queue"
    __table_args__ = (
        Index("ix_notification_queue_claim", "channel", "status", "available_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    rule_id = Column(String(36), nullable=True)
    event_id = Column(String(36), nullable=True)
    channel = Column(String, nullable=False)  # NotificationChannel value
    recipient = Column(String, nullable=False)
    subject = Column(String, nullable=True)
    body = Column(Text, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    status = Column(String, nullable=False, default=TaskStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    dedupe_key = Column(String, nullable=True, unique=True)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    locked_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    provider_id = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class NotificationLog(Base):
    """Audit trail of delivered and permanently failed notifications."""

    __tablename__ = "notification_log"

    id = Column(String(36), primary_key=True, default=new_id)
    queue_id = Column(String(36), nullable=True, index=True)
    channel = Column(String, nullable=False, index=True)
    recipient = Column(String, nullable=False, index=True)
    subject = Column(String, nullable=True)
    body = Column(Text, nullable=False)
    status = Column(String, nullable=False)  # "SENT" | "FAILED"
    provider_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    sent_at = Column(DateTime, default=utcnow, index=True)


class NotificationTemplate(Base):
    """Subject/body template referenced by rules."""

    __tablename__ = "notification_templates"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    subject = Column(String, nullable=True)
    body = Column(Text, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class NotificationRule(Base):
    """Maps a trigger event (plus optional filter) to a template and recipients."""

    __tablename__ = "notification_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    trigger_event = Column(String, nullable=False, index=True)
    filter = Column(JSON, nullable=True)  # {"current.status": "delivered"}
    template_id = Column(
        String(36), ForeignKey("notification_templates.id"), nullable=False
    )
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    template = relationship("NotificationTemplate")
    recipients = relationship(
        "NotificationRecipient",
        back_populates="rule",
        cascade="all, delete-orphan",
    )


class NotificationRecipient(Base):
    """A channel + target pair attached to a rule."""

    __tablename__ = "notification_recipients"

    id = Column(String(36), primary_key=True, default=new_id)
    rule_id = Column(
        String(36), ForeignKey("notification_rules.id"), nullable=False, index=True
    )
    channel = Column(String, nullable=False)
    target = Column(String, nullable=False)  # email, phone, Slack channel, URL
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    rule = relationship("NotificationRule", back_populates="recipients")


class Shipment(Base):
    """Shipment state as last reconciled from the carrier."""

    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tracking_number = Column(String, nullable=False, unique=True)
    tracker_id = Column(String, nullable=True, unique=True)
    carrier = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    po_number = Column(String, nullable=True)
    supplier = Column(String, nullable=True)
    shipped_date = Column(DateTime, nullable=True)
    estimated_delivery = Column(DateTime, nullable=True)
    delivered_date = Column(DateTime, nullable=True)
    last_checked = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tracking_events = relationship(
        "TrackingEvent", back_populates="shipment", cascade="all, delete-orphan"
    )


class TrackingEvent(Base):
    """Carrier scan event, unique per shipment, time and description."""

    __tablename__ = "tracking_events"
    __table_args__ = (
        UniqueConstraint(
            "shipment_id", "event_time", "message", name="uq_tracking_event_natural"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False)
    status = Column(String, nullable=True)
    location = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    event_time = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    shipment = relationship("Shipment", back_populates="tracking_events")


def init_db():
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)
