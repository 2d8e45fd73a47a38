from datetime import datetime, timezone

import pytest

from salonping.common.errors import SessionNotFound
from salonping.common.state_machine import ConnectionState
from salonping.services.messaging.session_store import SessionStore


@pytest.fixture
def store(session_factory, clock):
    return SessionStore(session_factory, clock=clock)


def test_upsert_creates_disconnected_row(store):
    session = store.upsert_session("salon-a", credentials_ref="salon_salon-a")

    assert session.connection_state == ConnectionState.DISCONNECTED
    assert session.is_connected is False
    assert session.messages_sent_today == 0
    assert store.get_session("salon-a").credentials_ref == "salon_salon-a"


def test_upsert_rejects_unknown_fields(store):
    with pytest.raises(ValueError, match="unknown session fields"):
        store.upsert_session("salon-a", phone_number="15550001111")

    assert store.find_session("salon-a") is None


def test_get_session_missing_tenant(store):
    with pytest.raises(SessionNotFound):
        store.get_session("salon-missing")
    with pytest.raises(SessionNotFound):
        store.record_send("salon-missing")


def test_daily_counter_rolls_over_at_utc_midnight(store, clock):
    store.upsert_session("salon-a")

    store.record_send("salon-a")
    session = store.record_send("salon-a")
    assert session.messages_sent_today == 2
    assert session.rate_limit_reset_at == datetime(2026, 3, 3, tzinfo=timezone.utc)
    assert session.last_activity_at == clock.now

    clock.advance(hours=14, minutes=59)
    assert store.record_send("salon-a").messages_sent_today == 3

    clock.advance(minutes=1)
    session = store.record_send("salon-a")
    assert session.messages_sent_today == 1
    assert session.rate_limit_reset_at == datetime(2026, 3, 4, tzinfo=timezone.utc)
