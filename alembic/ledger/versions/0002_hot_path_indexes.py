"""add stale-sweep and outbox hot-path indexes

Revision ID: 0002_coursepay_hot_path_indexes
Revises: 0001_coursepay
Create Date: 2026-10-14
"""

from alembic import op


revision = "0002_coursepay_hot_path_indexes"
down_revision = "0001_coursepay"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payments_status_created_at",
        "payments",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_payments_status_created_at", table_name="payments")
