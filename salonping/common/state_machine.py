"""Channel session state machine and queue status transitions.

`apply_event` is a pure function from (session, event) to the next session.
It knows nothing about the protocol library, the pool or the database, so the
lifecycle rules can be exercised without a network connection.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from salonping.common.errors import InvalidTransition


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"


LIVE_STATES = frozenset({ConnectionState.CONNECTED, ConnectionState.READY})


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of one tenant's persisted session row."""

    tenant_id: str
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    is_connected: bool = False
    channel_identity: str | None = None
    pairing_code: str | None = None
    last_connected_at: datetime | None = None
    last_activity_at: datetime | None = None
    messages_sent_today: int = 0
    rate_limit_reset_at: datetime | None = None
    last_disconnect_reason: str | None = None
    credentials_ref: str | None = None
    channel_metadata: dict = field(default_factory=dict)

    def lifecycle_fields(self) -> dict:
        """Fields owned by the state machine, written together as one set."""

        return {
            "connection_state": self.connection_state.value,
            "is_connected": self.is_connected,
            "channel_identity": self.channel_identity,
            "pairing_code": self.pairing_code,
            "last_connected_at": self.last_connected_at,
            "last_activity_at": self.last_activity_at,
            "last_disconnect_reason": self.last_disconnect_reason,
        }


@dataclass(frozen=True)
class SessionEvent:
    """Base class for events emitted by channel clients or the pool."""

    kind = "event"
    severity = "info"


@dataclass(frozen=True)
class PairingCodeIssued(SessionEvent):
    code: str
    kind = "pairing_code_issued"


@dataclass(frozen=True)
class Authenticated(SessionEvent):
    identity: str
    kind = "authenticated"


@dataclass(frozen=True)
class Ready(SessionEvent):
    identity: str
    kind = "ready"


@dataclass(frozen=True)
class Disconnected(SessionEvent):
    reason: str = "user_request"
    kind = "disconnected"


@dataclass(frozen=True)
class AuthFailed(SessionEvent):
    reason: str = "auth_failure"
    kind = "auth_failure"
    severity = "error"


@dataclass(frozen=True)
class PairingTimedOut(SessionEvent):
    kind = "pairing_timeout"
    severity = "warning"


@dataclass(frozen=True)
class MessageReceived(SessionEvent):
    """Inbound message observed on the channel; does not change state."""

    sender: str
    body: str
    protocol_message_id: str
    kind = "message_received"


TEARDOWN_EVENTS = (Disconnected, AuthFailed, PairingTimedOut)

# Disconnected → connected covers bridges that resume stored credentials
# without issuing a new pairing code.
ALLOWED_TRANSITIONS: dict[type, set[ConnectionState]] = {
    PairingCodeIssued: {ConnectionState.DISCONNECTED, ConnectionState.CONNECTING},
    Authenticated: {ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.CONNECTED},
    Ready: {ConnectionState.CONNECTED, ConnectionState.READY},
    Disconnected: set(ConnectionState),
    AuthFailed: set(ConnectionState),
    PairingTimedOut: {ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.CONNECTED},
}


def validate_transition(current: ConnectionState, event: SessionEvent) -> None:
    """Raise when an event is not allowed from the current state."""

    allowed = ALLOWED_TRANSITIONS.get(type(event))
    if allowed is None or current not in allowed:
        raise InvalidTransition(f"Invalid transition: {current.value} --{event.kind}-->")


def apply_event(session: SessionSnapshot, event: SessionEvent, now: datetime) -> SessionSnapshot:
    """Return the session that results from applying `event` at `now`."""

    validate_transition(session.connection_state, event)

    if isinstance(event, PairingCodeIssued):
        return replace(
            session,
            connection_state=ConnectionState.CONNECTING,
            is_connected=False,
            pairing_code=event.code,
            channel_identity=None,
            last_activity_at=now,
        )
    if isinstance(event, Authenticated):
        return replace(
            session,
            connection_state=ConnectionState.CONNECTED,
            is_connected=True,
            pairing_code=None,
            channel_identity=event.identity,
            last_activity_at=now,
        )
    if isinstance(event, Ready):
        return replace(
            session,
            connection_state=ConnectionState.READY,
            is_connected=True,
            pairing_code=None,
            channel_identity=event.identity,
            last_connected_at=now,
            last_activity_at=now,
            last_disconnect_reason=None,
        )
    reason = getattr(event, "reason", event.kind)
    return replace(
        session,
        connection_state=ConnectionState.DISCONNECTED,
        is_connected=False,
        pairing_code=None,
        channel_identity=None,
        last_disconnect_reason=reason,
    )


MESSAGE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"pending", "sent", "failed"},
    "sent": set(),
    "failed": set(),
}


def validate_message_transition(current: str, new: str) -> None:
    """Raise when a queue status change is not allowed."""

    if new not in MESSAGE_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
