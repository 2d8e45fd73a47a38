"""add outbox and stale-claim hot-path indexes

Revision ID: 0002_hot_path_indexes
Revises: 0001_messaging
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_messaging"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_message_queue_status_claimed_at",
        "message_queue",
        ["status", "claimed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_message_queue_status_claimed_at", table_name="message_queue")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
