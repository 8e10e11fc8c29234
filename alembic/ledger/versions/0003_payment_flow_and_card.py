"""record payment flow and card details

Revision ID: 0003_coursepay_payment_flow_and_card
Revises: 0002_coursepay_hot_path_indexes
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_coursepay_payment_flow_and_card"
down_revision = "0002_coursepay_hot_path_indexes"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "payments",
        sa.Column("flow", sa.String(), nullable=False, server_default="DIRECT"),
    )
    op.add_column("payments", sa.Column("fraud_status", sa.String(), nullable=True))
    op.add_column("payments", sa.Column("card_brand", sa.String(), nullable=True))


def downgrade() -> None:
    op.drop_column("payments", "card_brand")
    op.drop_column("payments", "fraud_status")
    op.drop_column("payments", "flow")
