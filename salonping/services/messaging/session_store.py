"""Durable per-tenant session rows.

Writes are upserts keyed by tenant. The row is locked for the duration of a
write, so two writers never interleave partial field sets; the last writer
wins per field set.
"""

from datetime import datetime, time, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from salonping.common.clock import as_utc, utcnow
from salonping.common.errors import SessionNotFound
from salonping.common.state_machine import ConnectionState, SessionSnapshot
from salonping.services.messaging.models import WhatsAppSession


WRITABLE_FIELDS = frozenset(
    {
        "connection_state",
        "is_connected",
        "channel_identity",
        "pairing_code",
        "credentials_ref",
        "channel_metadata",
        "last_connected_at",
        "last_activity_at",
        "last_disconnect_reason",
        "messages_sent_today",
        "rate_limit_reset_at",
    }
)


def next_utc_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)


def to_snapshot(row: WhatsAppSession) -> SessionSnapshot:
    return SessionSnapshot(
        tenant_id=row.tenant_id,
        connection_state=ConnectionState(row.connection_state),
        is_connected=bool(row.is_connected),
        channel_identity=row.channel_identity,
        pairing_code=row.pairing_code,
        last_connected_at=as_utc(row.last_connected_at),
        last_activity_at=as_utc(row.last_activity_at),
        messages_sent_today=row.messages_sent_today or 0,
        rate_limit_reset_at=as_utc(row.rate_limit_reset_at),
        last_disconnect_reason=row.last_disconnect_reason,
        credentials_ref=row.credentials_ref,
        channel_metadata=dict(row.channel_metadata or {}),
    )


class SessionStore:
    """Repository for `whatsapp_sessions`."""

    def __init__(self, session_factory, clock=utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def find_session(self, tenant_id: str) -> SessionSnapshot | None:
        with self.session_factory() as db:
            row = db.get(WhatsAppSession, tenant_id)
            return to_snapshot(row) if row is not None else None

    def get_session(self, tenant_id: str) -> SessionSnapshot:
        session = self.find_session(tenant_id)
        if session is None:
            raise SessionNotFound(f"no session for tenant {tenant_id}")
        return session

    def upsert_session(self, tenant_id: str, **fields) -> SessionSnapshot:
        """Create or update the tenant's row with one consistent field set."""

        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        if isinstance(fields.get("connection_state"), ConnectionState):
            fields["connection_state"] = fields["connection_state"].value

        # A concurrent first insert for the same tenant loses on the primary
        # key; the second pass then finds the row and updates it.
        for attempt in (1, 2):
            with self.session_factory() as db:
                row = db.execute(
                    select(WhatsAppSession).where(WhatsAppSession.tenant_id == tenant_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    row = WhatsAppSession(
                        tenant_id=tenant_id,
                        connection_state=ConnectionState.DISCONNECTED.value,
                        is_connected=False,
                        messages_sent_today=0,
                        channel_metadata={},
                    )
                    db.add(row)
                for name, value in fields.items():
                    setattr(row, name, value)
                row.updated_at = self.clock()
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    if attempt == 2:
                        raise
                    continue
                return to_snapshot(row)
        raise RuntimeError("unreachable")

    def save(self, session: SessionSnapshot) -> SessionSnapshot:
        """Persist the lifecycle field set of a snapshot produced by the state machine."""

        return self.upsert_session(session.tenant_id, **session.lifecycle_fields())

    def record_send(self, tenant_id: str) -> SessionSnapshot:
        """Count one delivered message and bump activity.

        `messages_sent_today` restarts from zero once `rate_limit_reset_at`
        (next UTC midnight) has passed.
        """

        now = self.clock()
        with self.session_factory() as db:
            row = db.execute(
                select(WhatsAppSession).where(WhatsAppSession.tenant_id == tenant_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise SessionNotFound(f"no session for tenant {tenant_id}")
            reset_at = as_utc(row.rate_limit_reset_at)
            if reset_at is None or now >= reset_at:
                row.messages_sent_today = 1
                row.rate_limit_reset_at = next_utc_midnight(now)
            else:
                row.messages_sent_today = (row.messages_sent_today or 0) + 1
            row.last_activity_at = now
            row.updated_at = now
            db.commit()
            return to_snapshot(row)

    def list_sessions(self, states: set[ConnectionState] | None = None) -> list[SessionSnapshot]:
        """Cross-tenant read reserved for bulk sweeps (restart recovery, reaping)."""

        with self.session_factory() as db:
            query = select(WhatsAppSession).order_by(WhatsAppSession.tenant_id)
            if states:
                query = query.where(WhatsAppSession.connection_state.in_([state.value for state in states]))
            return [to_snapshot(row) for row in db.execute(query).scalars().all()]
