"""Transactional outbox helpers.

Rows are added in the same transaction as the state change they describe and
published later by `OutboxPublisher`, so a crash between commit and publish
only delays the event.
"""

from datetime import timedelta

from sqlalchemy import func, or_, select, update

from salonping.common.clock import as_utc, utcnow
from salonping.common.events import EventEnvelope, KafkaBus
from salonping.common.logging import logger, trace_id_ctx
from salonping.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def add_outbox_event(db, outbox_model, topic: str, tenant_id: str, aggregate_id: str, payload: dict) -> None:
    """Stage one envelope for publishing inside the caller's transaction."""

    envelope = EventEnvelope(
        event_type=topic,
        tenant_id=tenant_id,
        aggregate_id=aggregate_id,
        trace_id=trace_id_ctx.get(),
        payload=payload,
    )
    db.add(
        outbox_model(
            id=envelope.event_id,
            tenant_id=tenant_id,
            aggregate_id=aggregate_id,
            topic=topic,
            payload=envelope.model_dump(),
            status="PENDING",
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(claim_ids))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=utcnow())
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = as_utc(
        db.execute(select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (utcnow() - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Drains one outbox table into Kafka, one claimed batch per tick."""

    def __init__(self, session_factory, outbox_model, kafka: KafkaBus, service_name: str) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.kafka = kafka
        self.service_name = service_name

    async def publish_batch(self, limit: int = 100) -> int:
        """Publish one claimed batch and return how many rows were delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.outbox_model, limit=limit)
            update_outbox_backlog_metrics(db, self.outbox_model, self.service_name)
            db.commit()
        published = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, self.outbox_model, row["id"])
                    db.commit()
                published += 1
            except Exception as exc:
                logger.exception("outbox publish failed event_id=%s: %s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, self.outbox_model, row["id"])
                    db.commit()
        return published
