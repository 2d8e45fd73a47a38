"""Unit tests for session lifecycle and queue status guardrails."""

from datetime import datetime, timezone

import pytest

from salonping.common.errors import InvalidTransition
from salonping.common.state_machine import (
    AuthFailed,
    Authenticated,
    ConnectionState,
    Disconnected,
    PairingCodeIssued,
    PairingTimedOut,
    Ready,
    SessionSnapshot,
    apply_event,
    validate_message_transition,
    validate_transition,
)


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def assert_invariants(session: SessionSnapshot) -> None:
    live = session.connection_state in (ConnectionState.CONNECTED, ConnectionState.READY)
    assert (session.pairing_code is not None) == (session.connection_state == ConnectionState.CONNECTING)
    assert (session.channel_identity is not None) == live
    assert session.is_connected == live


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition(ConnectionState.DISCONNECTED, PairingCodeIssued(code="qr"))


def test_invalid_transition():
    """Ready cannot be reached before the session authenticated."""

    with pytest.raises(ValueError):
        validate_transition(ConnectionState.CONNECTING, Ready(identity="15550001111"))


def test_full_pairing_walk_keeps_invariants():
    session = SessionSnapshot(tenant_id="salon-a")
    for event in (PairingCodeIssued(code="qr-1"), Authenticated(identity="15550001111"), Ready(identity="15550001111")):
        session = apply_event(session, event, NOW)
        assert_invariants(session)

    assert session.connection_state == ConnectionState.READY
    assert session.last_connected_at == NOW
    assert session.pairing_code is None


def test_resumed_credentials_skip_pairing_code():
    session = apply_event(SessionSnapshot(tenant_id="salon-a"), Authenticated(identity="15550001111"), NOW)
    assert session.connection_state == ConnectionState.CONNECTED
    assert_invariants(session)


@pytest.mark.parametrize(
    "event, reason",
    [
        (Disconnected(), "user_request"),
        (AuthFailed(reason="bad_credentials"), "bad_credentials"),
        (PairingTimedOut(), "pairing_timeout"),
    ],
)
def test_teardown_clears_session(event, reason):
    session = apply_event(SessionSnapshot(tenant_id="salon-a"), PairingCodeIssued(code="qr"), NOW)
    session = apply_event(session, event, NOW)

    assert session.connection_state == ConnectionState.DISCONNECTED
    assert session.last_disconnect_reason == reason
    assert_invariants(session)


def test_pairing_timeout_not_allowed_once_ready():
    session = SessionSnapshot(tenant_id="salon-a")
    session = apply_event(session, Authenticated(identity="1555"), NOW)
    session = apply_event(session, Ready(identity="1555"), NOW)

    with pytest.raises(InvalidTransition):
        apply_event(session, PairingTimedOut(), NOW)


def test_message_status_transitions():
    validate_message_transition("pending", "processing")
    validate_message_transition("processing", "pending")
    with pytest.raises(ValueError):
        validate_message_transition("sent", "pending")
    with pytest.raises(ValueError):
        validate_message_transition("pending", "sent")
