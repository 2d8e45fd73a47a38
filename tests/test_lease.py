import asyncio

from salonping.common.state_machine import ConnectionState
from salonping.services.messaging.audit import AuditLog
from salonping.services.messaging.lease import TenantLease
from salonping.services.messaging.pool import ChannelClientPool
from salonping.services.messaging.session_store import SessionStore

from conftest import FakeChannelFactory, FakeRedis


def test_acquire_is_exclusive_and_reentrant():
    redis_client = FakeRedis()
    first = TenantLease(redis_client, "worker-1")
    second = TenantLease(redis_client, "worker-2")

    assert first.acquire("salon-a") is True
    assert first.acquire("salon-a") is True
    assert second.acquire("salon-a") is False
    assert second.held_elsewhere("salon-a") is True
    assert first.held_elsewhere("salon-a") is False


def test_renew_and_release_never_touch_a_taken_over_lease():
    redis_client = FakeRedis()
    lease = TenantLease(redis_client, "worker-1")
    lease.acquire("salon-a")

    # Expired and re-acquired by another worker in between.
    redis_client.steal(TenantLease.key("salon-a"), "worker-2")

    assert lease.renew("salon-a") is False
    lease.release("salon-a")
    assert lease.owner("salon-a") == "worker-2"


def test_release_frees_own_lease():
    redis_client = FakeRedis()
    lease = TenantLease(redis_client, "worker-1")
    lease.acquire("salon-a")

    lease.release("salon-a")

    assert lease.owner("salon-a") is None
    assert TenantLease(redis_client, "worker-2").acquire("salon-a") is True


def test_lost_lease_tears_the_client_down(session_factory):
    redis_client = FakeRedis()
    store = SessionStore(session_factory)
    pool = ChannelClientPool(
        store, AuditLog(session_factory), FakeChannelFactory(), lease=TenantLease(redis_client, "worker-1")
    )

    async def scenario():
        await pool.connect("salon-a")
        redis_client.steal(TenantLease.key("salon-a"), "worker-2")
        return await pool.renew_leases()

    assert asyncio.run(scenario()) == ["salon-a"]
    assert pool.active_tenants() == []
    # worker-2 owns the row now; it is not overwritten.
    assert store.get_session("salon-a").connection_state == ConnectionState.READY
    assert redis_client.get(TenantLease.key("salon-a")) == "worker-2"


def test_expired_lease_marks_the_session_disconnected(session_factory):
    redis_client = FakeRedis()
    store = SessionStore(session_factory)
    pool = ChannelClientPool(
        store, AuditLog(session_factory), FakeChannelFactory(), lease=TenantLease(redis_client, "worker-1")
    )

    async def scenario():
        await pool.connect("salon-a")
        redis_client.values.clear()
        return await pool.renew_leases()

    assert asyncio.run(scenario()) == ["salon-a"]
    session = store.get_session("salon-a")
    assert session.connection_state == ConnectionState.DISCONNECTED
    assert session.last_disconnect_reason == "lease_lost"
