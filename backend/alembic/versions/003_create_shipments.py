"""Create shipments and tracking_events tables.

Revision ID: 003
Revises: 002
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa

revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "shipments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tracking_number", sa.String(), nullable=False, unique=True),
        sa.Column("tracker_id", sa.String(), nullable=True, unique=True),
        sa.Column("carrier", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("po_number", sa.String(), nullable=True),
        sa.Column("supplier", sa.String(), nullable=True),
        sa.Column("shipped_date", sa.DateTime(), nullable=True),
        sa.Column("estimated_delivery", sa.DateTime(), nullable=True),
        sa.Column("delivered_date", sa.DateTime(), nullable=True),
        sa.Column("last_checked", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "tracking_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "shipment_id", sa.Integer(), sa.ForeignKey("shipments.id"), nullable=False
        ),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("event_time", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "shipment_id", "event_time", "message", name="uq_tracking_event_natural"
        ),
    )


def downgrade() -> None:
    op.drop_table("tracking_events")
    op.drop_table("shipments")
