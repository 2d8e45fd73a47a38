"""initial messaging schema

Revision ID: 0001_messaging
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_messaging"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "whatsapp_sessions",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("connection_state", sa.String(), nullable=False, server_default="disconnected"),
        sa.Column("is_connected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("channel_identity", sa.String(), nullable=True),
        sa.Column("pairing_code", sa.Text(), nullable=True),
        sa.Column("credentials_ref", sa.String(), nullable=True),
        sa.Column("channel_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_disconnect_reason", sa.String(), nullable=True),
        sa.Column("messages_sent_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate_limit_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
        sa.CheckConstraint(
            "connection_state IN ('disconnected', 'connecting', 'connected', 'ready')",
            name="ck_whatsapp_sessions_state",
        ),
    )
    op.create_index("ix_whatsapp_sessions_connection_state", "whatsapp_sessions", ["connection_state"])

    op.create_table(
        "message_queue",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("recipient_address", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(), nullable=False, server_default="text"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("appointment_ref", sa.String(), nullable=True),
        sa.Column("reminder_kind", sa.String(), nullable=True),
        sa.Column("protocol_message_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "appointment_ref", "reminder_kind", name="uq_queue_reminder"),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_message_queue_attempts"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'sent', 'failed')",
            name="ck_message_queue_status",
        ),
    )
    op.create_index("ix_message_queue_tenant_id", "message_queue", ["tenant_id"])
    op.create_index("ix_message_queue_status", "message_queue", ["status"])
    op.create_index("ix_message_queue_appointment_ref", "message_queue", ["appointment_ref"])
    op.create_index(
        "ix_message_queue_due",
        "message_queue",
        ["tenant_id", "status", "priority", "scheduled_for"],
    )

    op.create_table(
        "message_records",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("queue_message_id", sa.String(), nullable=True),
        sa.Column("recipient_address", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("protocol_message_id", sa.String(), nullable=True),
        sa.Column("error_text", sa.Text(), nullable=True),
        sa.Column("appointment_ref", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_message_records_tenant_id", "message_records", ["tenant_id"])
    op.create_index("ix_message_records_queue_message_id", "message_records", ["queue_message_id"])

    op.create_table(
        "session_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False, server_default="info"),
        sa.Column("detail", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_session_events_tenant_id", "session_events", ["tenant_id"])
    op.create_index("ix_session_events_event_type", "session_events", ["event_type"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_tenant_id", "outbox_events", ["tenant_id"])
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_index("ix_outbox_events_tenant_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_session_events_event_type", table_name="session_events")
    op.drop_index("ix_session_events_tenant_id", table_name="session_events")
    op.drop_table("session_events")
    op.drop_index("ix_message_records_queue_message_id", table_name="message_records")
    op.drop_index("ix_message_records_tenant_id", table_name="message_records")
    op.drop_table("message_records")
    op.drop_index("ix_message_queue_due", table_name="message_queue")
    op.drop_index("ix_message_queue_appointment_ref", table_name="message_queue")
    op.drop_index("ix_message_queue_status", table_name="message_queue")
    op.drop_index("ix_message_queue_tenant_id", table_name="message_queue")
    op.drop_table("message_queue")
    op.drop_index("ix_whatsapp_sessions_connection_state", table_name="whatsapp_sessions")
    op.drop_table("whatsapp_sessions")
