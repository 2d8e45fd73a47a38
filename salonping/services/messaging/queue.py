"""Durable, prioritized, retryable outbound message ledger.

Claims are exclusive: a row moves `pending → processing` only through a
compare-and-set on its status (with `FOR UPDATE SKIP LOCKED` on PostgreSQL),
so two workers racing for the same row simply see it claimed once. Terminal
outcomes append a `message_records` row and an outbox event in the same
transaction.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from salonping.common.clock import as_utc, utcnow
from salonping.common.events import MESSAGE_FAILED_TOPIC, MESSAGE_SENT_TOPIC
from salonping.common.logging import logger
from salonping.common.metrics import (
    message_retries_total,
    messages_enqueued_total,
    messages_failed_total,
    messages_sent_total,
)
from salonping.common.outbox import add_outbox_event
from salonping.common.state_machine import validate_message_transition
from salonping.services.messaging.models import MessageRecord, OutboxEvent, QueuedMessage


MESSAGE_STATUSES = ("pending", "processing", "sent", "failed")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base * 2^(attempts-1), capped at max_delay."""

    base_seconds: float = 30.0
    max_delay_seconds: float = 1800.0

    def delay_for(self, attempts: int) -> timedelta:
        exponent = max(0, attempts - 1)
        return timedelta(seconds=min(self.base_seconds * (2**exponent), self.max_delay_seconds))


@dataclass(frozen=True)
class ClaimedMessage:
    id: str
    tenant_id: str
    recipient_address: str
    body: str
    message_type: str
    priority: int
    scheduled_for: datetime
    attempts: int
    max_attempts: int
    appointment_ref: str | None
    reminder_kind: str | None


class MessageQueue:
    """Queue operations over `message_queue`; the only writer of its rows."""

    def __init__(
        self,
        session_factory,
        retry_policy: RetryPolicy | None = None,
        default_max_attempts: int = 3,
        worker_id: str = "",
        service_name: str = "messaging",
        clock=utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_max_attempts = default_max_attempts
        self.worker_id = worker_id
        self.service_name = service_name
        self.clock = clock

    def _new_row(
        self,
        tenant_id: str,
        recipient_address: str,
        body: str,
        message_type: str,
        priority: int,
        scheduled_for: datetime | None,
        max_attempts: int | None,
        appointment_ref: str | None,
        reminder_kind: str | None,
    ) -> QueuedMessage:
        if not body:
            raise ValueError("message body must not be empty")
        max_attempts = max_attempts or self.default_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        return QueuedMessage(
            id=str(uuid4()),
            tenant_id=tenant_id,
            recipient_address=recipient_address,
            body=body,
            message_type=message_type,
            priority=priority,
            scheduled_for=as_utc(scheduled_for) or self.clock(),
            attempts=0,
            max_attempts=max_attempts,
            status="pending",
            appointment_ref=appointment_ref,
            reminder_kind=reminder_kind,
        )

    def enqueue(
        self,
        tenant_id: str,
        recipient_address: str,
        body: str,
        *,
        message_type: str = "text",
        priority: int = 2,
        scheduled_for: datetime | None = None,
        max_attempts: int | None = None,
        appointment_ref: str | None = None,
        reminder_kind: str | None = None,
        source: str = "direct",
    ) -> str:
        """Insert one `pending` message and return its id."""

        row = self._new_row(
            tenant_id,
            recipient_address,
            body,
            message_type,
            priority,
            scheduled_for,
            max_attempts,
            appointment_ref,
            reminder_kind,
        )
        with self.session_factory() as db:
            db.add(row)
            db.commit()
        messages_enqueued_total.labels(service=self.service_name, source=source).inc()
        logger.info(
            "message_enqueued tenant_id=%s message_id=%s priority=%s scheduled_for=%s",
            tenant_id,
            row.id,
            row.priority,
            row.scheduled_for.isoformat(),
        )
        return row.id

    def enqueue_reminder(
        self,
        tenant_id: str,
        recipient_address: str,
        body: str,
        *,
        appointment_ref: str,
        reminder_kind: str,
        scheduled_for: datetime,
        priority: int = 2,
    ) -> str | None:
        """Enqueue a reminder once per (appointment, kind); None when already queued."""

        if self.reminder_exists(tenant_id, appointment_ref, reminder_kind):
            return None
        row = self._new_row(
            tenant_id,
            recipient_address,
            body,
            "reminder",
            priority,
            scheduled_for,
            None,
            appointment_ref,
            reminder_kind,
        )
        with self.session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Another scheduler instance inserted the same reminder first.
                db.rollback()
                return None
        messages_enqueued_total.labels(service=self.service_name, source="reminder").inc()
        return row.id

    def reminder_exists(self, tenant_id: str, appointment_ref: str, reminder_kind: str) -> bool:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(QueuedMessage.id).where(
                        QueuedMessage.tenant_id == tenant_id,
                        QueuedMessage.appointment_ref == appointment_ref,
                        QueuedMessage.reminder_kind == reminder_kind,
                    )
                ).first()
                is not None
            )

    def claim_due(self, tenant_id: str, limit: int) -> list[ClaimedMessage]:
        """Atomically claim up to `limit` due rows, most urgent first.

        Claimed rows become `processing` with `attempts += 1`. A row another
        worker claimed first is just absent from the result.
        """

        validate_message_transition("pending", "processing")
        table = QueuedMessage.__table__
        now = self.clock()
        due_ids = (
            select(table.c.id)
            .where(
                table.c.tenant_id == tenant_id,
                table.c.status == "pending",
                table.c.scheduled_for <= now,
                table.c.attempts < table.c.max_attempts,
            )
            .order_by(table.c.priority.asc(), table.c.scheduled_for.asc(), table.c.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        with self.session_factory() as db:
            rows = db.execute(
                update(table)
                .where(table.c.id.in_(due_ids), table.c.status == "pending")
                .values(
                    status="processing",
                    attempts=table.c.attempts + 1,
                    claimed_at=now,
                    claimed_by=self.worker_id,
                    updated_at=now,
                )
                .returning(
                    table.c.id,
                    table.c.tenant_id,
                    table.c.recipient_address,
                    table.c.body,
                    table.c.message_type,
                    table.c.priority,
                    table.c.scheduled_for,
                    table.c.attempts,
                    table.c.max_attempts,
                    table.c.appointment_ref,
                    table.c.reminder_kind,
                    table.c.created_at,
                )
            ).all()
            db.commit()
        # RETURNING carries no ordering guarantee.
        rows = sorted(rows, key=lambda r: (r.priority, as_utc(r.scheduled_for), as_utc(r.created_at), r.id))
        return [
            ClaimedMessage(
                id=row.id,
                tenant_id=row.tenant_id,
                recipient_address=row.recipient_address,
                body=row.body,
                message_type=row.message_type,
                priority=row.priority,
                scheduled_for=as_utc(row.scheduled_for),
                attempts=row.attempts,
                max_attempts=row.max_attempts,
                appointment_ref=row.appointment_ref,
                reminder_kind=row.reminder_kind,
            )
            for row in rows
        ]

    def mark_sent(self, message_id: str, protocol_message_id: str) -> bool:
        """Settle a claimed row as sent; False when the row was not `processing`."""

        validate_message_transition("processing", "sent")
        now = self.clock()
        table = QueuedMessage.__table__
        with self.session_factory() as db:
            row = db.execute(
                update(table)
                .where(table.c.id == message_id, table.c.status == "processing")
                .values(
                    status="sent",
                    protocol_message_id=protocol_message_id,
                    sent_at=now,
                    last_error=None,
                    updated_at=now,
                )
                .returning(
                    table.c.tenant_id,
                    table.c.recipient_address,
                    table.c.body,
                    table.c.appointment_ref,
                    table.c.attempts,
                )
            ).first()
            if row is None:
                db.rollback()
                logger.info("mark_sent_ignored message_id=%s", message_id)
                return False
            db.add(
                MessageRecord(
                    tenant_id=row.tenant_id,
                    queue_message_id=message_id,
                    recipient_address=row.recipient_address,
                    body=row.body,
                    status="sent",
                    protocol_message_id=protocol_message_id,
                    appointment_ref=row.appointment_ref,
                )
            )
            add_outbox_event(
                db,
                OutboxEvent,
                MESSAGE_SENT_TOPIC,
                tenant_id=row.tenant_id,
                aggregate_id=message_id,
                payload={
                    "message_id": message_id,
                    "protocol_message_id": protocol_message_id,
                    "appointment_ref": row.appointment_ref,
                    "attempts": row.attempts,
                },
            )
            db.commit()
        messages_sent_total.labels(service=self.service_name).inc()
        return True

    def mark_failed(self, message_id: str, error_text: str, retryable: bool = True) -> str | None:
        """Record a failed attempt.

        Returns the resulting status: "pending" when rescheduled with backoff,
        "failed" when terminal, None when the row was not `processing`.
        """

        now = self.clock()
        with self.session_factory() as db:
            row = db.execute(
                select(QueuedMessage).where(QueuedMessage.id == message_id).with_for_update()
            ).scalar_one_or_none()
            if row is None or row.status != "processing":
                db.rollback()
                logger.info("mark_failed_ignored message_id=%s", message_id)
                return None

            row.last_error = error_text
            row.claimed_at = None
            row.updated_at = now
            if retryable and row.attempts < row.max_attempts:
                validate_message_transition(row.status, "pending")
                row.status = "pending"
                row.scheduled_for = now + self.retry_policy.delay_for(row.attempts)
                db.commit()
                message_retries_total.labels(service=self.service_name).inc()
                logger.warning(
                    "message_rescheduled tenant_id=%s message_id=%s attempt=%s next_at=%s error=%s",
                    row.tenant_id,
                    message_id,
                    row.attempts,
                    row.scheduled_for.isoformat(),
                    error_text,
                )
                return "pending"

            validate_message_transition(row.status, "failed")
            row.status = "failed"
            reason = "exhausted" if retryable else "permanent"
            db.add(
                MessageRecord(
                    tenant_id=row.tenant_id,
                    queue_message_id=message_id,
                    recipient_address=row.recipient_address,
                    body=row.body,
                    status="failed",
                    error_text=error_text,
                    appointment_ref=row.appointment_ref,
                )
            )
            add_outbox_event(
                db,
                OutboxEvent,
                MESSAGE_FAILED_TOPIC,
                tenant_id=row.tenant_id,
                aggregate_id=message_id,
                payload={
                    "message_id": message_id,
                    "error": error_text,
                    "reason": reason,
                    "appointment_ref": row.appointment_ref,
                    "attempts": row.attempts,
                },
            )
            db.commit()
        messages_failed_total.labels(service=self.service_name, reason=reason).inc()
        logger.error("message_failed message_id=%s reason=%s error=%s", message_id, reason, error_text)
        return "failed"

    def release(self, message_id: str) -> bool:
        """Hand a claimed row back to `pending` and return the claim's attempt."""

        validate_message_transition("processing", "pending")
        table = QueuedMessage.__table__
        with self.session_factory() as db:
            result = db.execute(
                update(table)
                .where(table.c.id == message_id, table.c.status == "processing", table.c.attempts > 0)
                .values(status="pending", attempts=table.c.attempts - 1, claimed_at=None, updated_at=self.clock())
            )
            db.commit()
            return result.rowcount == 1

    def requeue_stale(self, processing_timeout_seconds: int) -> int:
        """Settle `processing` rows orphaned by a crashed worker as retryable failures."""

        stale_before = self.clock() - timedelta(seconds=processing_timeout_seconds)
        with self.session_factory() as db:
            stale_ids = (
                db.execute(
                    select(QueuedMessage.id).where(
                        QueuedMessage.status == "processing",
                        QueuedMessage.claimed_at.is_not(None),
                        QueuedMessage.claimed_at < stale_before,
                    )
                )
                .scalars()
                .all()
            )
        for message_id in stale_ids:
            self.mark_failed(message_id, "processing timed out", retryable=True)
        return len(stale_ids)

    def get_message(self, message_id: str, tenant_id: str | None = None) -> QueuedMessage | None:
        with self.session_factory() as db:
            row = db.get(QueuedMessage, message_id)
            if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
                return None
            return row

    def list_messages(self, tenant_id: str, status: str | None = None, limit: int = 50) -> list[QueuedMessage]:
        with self.session_factory() as db:
            query = select(QueuedMessage).where(QueuedMessage.tenant_id == tenant_id)
            if status:
                query = query.where(QueuedMessage.status == status)
            query = query.order_by(QueuedMessage.scheduled_for.asc()).limit(limit)
            return list(db.execute(query).scalars().all())

    def status_counts(self, tenant_id: str | None = None) -> dict[str, int]:
        with self.session_factory() as db:
            query = select(QueuedMessage.status, func.count()).group_by(QueuedMessage.status)
            if tenant_id is not None:
                query = query.where(QueuedMessage.tenant_id == tenant_id)
            counts = {status: 0 for status in MESSAGE_STATUSES}
            counts.update({status: count for status, count in db.execute(query).all()})
            return counts

    def tenants_with_due(self) -> list[str]:
        now = self.clock()
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(QueuedMessage.tenant_id)
                    .where(QueuedMessage.status == "pending", QueuedMessage.scheduled_for <= now)
                    .distinct()
                )
                .scalars()
                .all()
            )
