"""Messaging persistence models.

Sessions and queued messages are the only state shared between worker
processes; everything else in the engine is rebuilt on restart.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from salonping.common.db import Base, JSONType


class WhatsAppSession(Base):
    """Current channel connection state for one tenant."""

    __tablename__ = "whatsapp_sessions"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    connection_state: Mapped[str] = mapped_column(String, default="disconnected", index=True)
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    channel_identity: Mapped[str | None] = mapped_column(String, nullable=True)
    pairing_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    credentials_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    channel_metadata: Mapped[dict] = mapped_column(JSONType, default=dict)
    last_connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_disconnect_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    messages_sent_today: Mapped[int] = mapped_column(Integer, default=0)
    rate_limit_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class QueuedMessage(Base):
    """Outbound message ledger row; superseded by status, never deleted."""

    __tablename__ = "message_queue"
    __table_args__ = (
        UniqueConstraint("tenant_id", "appointment_ref", "reminder_kind", name="uq_queue_reminder"),
        Index("ix_message_queue_due", "tenant_id", "status", "priority", "scheduled_for"),
        Index("ix_message_queue_status_claimed_at", "status", "claimed_at"),
        CheckConstraint("attempts <= max_attempts", name="ck_message_queue_attempts"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    recipient_address: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    message_type: Mapped[str] = mapped_column(String, default="text")
    priority: Mapped[int] = mapped_column(Integer, default=2)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    appointment_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    reminder_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    protocol_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class MessageRecord(Base):
    """Immutable audit row for each terminal delivery outcome or inbound message."""

    __tablename__ = "message_records"
    __table_args__ = (
        # Bridges replay recent inbound history on every reconnect.
        Index(
            "uq_message_records_inbound",
            "tenant_id",
            "protocol_message_id",
            unique=True,
            postgresql_where=text("status = 'received'"),
            sqlite_where=text("status = 'received'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    queue_message_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    recipient_address: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String)
    protocol_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    appointment_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SessionEventLog(Base):
    """Audit trail of session lifecycle and delivery error events."""

    __tablename__ = "session_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String, default="info")
    detail: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"
    __table_args__ = (Index("ix_outbox_events_status_created_at", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
