"""Session event log and delivery audit records."""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from salonping.common.events import SESSION_UPDATED_TOPIC
from salonping.common.logging import logger
from salonping.common.outbox import add_outbox_event
from salonping.common.state_machine import SessionSnapshot
from salonping.services.messaging.models import MessageRecord, OutboxEvent, SessionEventLog


def session_payload(session: SessionSnapshot) -> dict:
    """JSON-safe projection of a session for events and HTTP responses."""

    return {
        "tenant_id": session.tenant_id,
        "connection_state": session.connection_state.value,
        "is_connected": session.is_connected,
        "channel_identity": session.channel_identity,
        "pairing_code": session.pairing_code,
        "last_connected_at": session.last_connected_at.isoformat() if session.last_connected_at else None,
        "last_activity_at": session.last_activity_at.isoformat() if session.last_activity_at else None,
        "last_disconnect_reason": session.last_disconnect_reason,
        "messages_sent_today": session.messages_sent_today,
        "rate_limit_reset_at": session.rate_limit_reset_at.isoformat() if session.rate_limit_reset_at else None,
    }


class AuditLog:
    """Writes `session_events` rows, inbound message records and their outbox events."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def record_event(
        self,
        tenant_id: str,
        event_type: str,
        detail: dict | None = None,
        severity: str = "info",
        session: SessionSnapshot | None = None,
    ) -> None:
        """Persist one event; with `session`, also stage a session-updated envelope.

        Failures are logged and swallowed: the audit trail must never take a
        sweep or a connection attempt down with it.
        """

        try:
            with self.session_factory() as db:
                db.add(
                    SessionEventLog(
                        tenant_id=tenant_id,
                        event_type=event_type,
                        severity=severity,
                        detail=detail or {},
                    )
                )
                if session is not None:
                    add_outbox_event(
                        db,
                        OutboxEvent,
                        SESSION_UPDATED_TOPIC,
                        tenant_id=tenant_id,
                        aggregate_id=tenant_id,
                        payload={"event_type": event_type, "session": session_payload(session)},
                    )
                db.commit()
        except Exception as exc:
            logger.error("audit_write_failed tenant_id=%s event_type=%s error=%s", tenant_id, event_type, exc)

    def record_inbound(self, tenant_id: str, sender: str, body: str, protocol_message_id: str) -> bool:
        """Store an inbound message observed on the tenant's channel; False when already stored."""

        try:
            with self.session_factory() as db:
                existing = db.execute(
                    select(MessageRecord.id).where(
                        MessageRecord.tenant_id == tenant_id,
                        MessageRecord.protocol_message_id == protocol_message_id,
                        MessageRecord.status == "received",
                    )
                ).first()
                if existing is not None:
                    return False
                db.add(
                    MessageRecord(
                        tenant_id=tenant_id,
                        recipient_address=sender,
                        body=body,
                        status="received",
                        protocol_message_id=protocol_message_id,
                    )
                )
                db.commit()
            return True
        except IntegrityError:
            # A concurrent poll stored the same message first.
            return False
        except Exception as exc:
            logger.error("inbound_record_failed tenant_id=%s error=%s", tenant_id, exc)
            return False
