"""Initial schema for events, subscriptions and the notification log.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Events table (written by the ingestion side, read by detection)
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=True),
        sa.Column("to_address", sa.String(42), nullable=True),
        sa.Column("data", JSON_TYPE, nullable=False),
        sa.Column("transaction_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "chain", "transaction_hash", "log_index", name="uq_events_chain_tx_log"
        ),
    )
    op.create_index("idx_events_type_ts", "events", ["event_type", "timestamp"])
    op.create_index(
        "idx_events_type_chain_block", "events", ["event_type", "chain", "block_number"]
    )
    op.create_index("idx_events_contract", "events", ["contract_address"])

    # Subscriptions table
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=False),
        sa.Column("meta_event_config", JSON_TYPE, nullable=False),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_subscriptions_active", "subscriptions", ["is_active"])
    op.create_index("idx_subscriptions_user", "subscriptions", ["user_id"])

    # Notification audit log
    op.create_table(
        "notifications_log",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("webhook_response_status", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"
        ),
    )
    op.create_index(
        "idx_notifications_log_sub_triggered",
        "notifications_log",
        ["subscription_id", "triggered_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_notifications_log_sub_triggered", table_name="notifications_log")
    op.drop_table("notifications_log")

    op.drop_index("idx_subscriptions_user", table_name="subscriptions")
    op.drop_index("idx_subscriptions_active", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("idx_events_contract", table_name="events")
    op.drop_index("idx_events_type_chain_block", table_name="events")
    op.drop_index("idx_events_type_ts", table_name="events")
    op.drop_table("events")
