import asyncio

from sqlalchemy import select

from salonping.common.state_machine import ConnectionState
from salonping.services.messaging.models import SessionEventLog
from salonping.services.messaging.runtime import MessagingRuntime

from conftest import FakeChannelFactory, FakeRedis, make_settings


def seed_live_session(runtime, tenant_id):
    runtime.store.upsert_session(
        tenant_id,
        connection_state=ConnectionState.READY,
        is_connected=True,
        channel_identity="15550001111",
        credentials_ref=f"salon_{tenant_id}",
    )


def test_restart_resets_live_sessions(session_factory):
    runtime = MessagingRuntime(make_settings(resume_sessions_on_start=False), session_factory, FakeChannelFactory())
    seed_live_session(runtime, "salon-a")

    async def scenario():
        await runtime.start()
        await runtime.shutdown()

    asyncio.run(scenario())

    session = runtime.store.get_session("salon-a")
    assert session.connection_state == ConnectionState.DISCONNECTED
    assert session.last_disconnect_reason == "process_restart"
    assert session.channel_identity is None
    with session_factory() as db:
        types = db.execute(select(SessionEventLog.event_type)).scalars().all()
    assert "process_restart" in types


def test_restart_resumes_stored_credentials(session_factory):
    factory = FakeChannelFactory()
    runtime = MessagingRuntime(make_settings(resume_sessions_on_start=True), session_factory, factory)
    seed_live_session(runtime, "salon-a")

    async def scenario():
        await runtime.start()
        ready = runtime.pool.is_ready("salon-a")
        await runtime.shutdown()
        return ready

    assert asyncio.run(scenario()) is True
    assert len(factory.clients["salon-a"]) == 1
    # Shutdown leaves rows live for the next start to resume.
    assert runtime.store.get_session("salon-a").connection_state == ConnectionState.READY


def test_maintenance_requeues_orphaned_claims(runtime, clock):
    runtime.queue.clock = clock
    message_id = runtime.queue.enqueue("salon-a", "+15551234567", "hi")
    runtime.queue.claim_due("salon-a", 1)
    clock.advance(seconds=runtime.config.processing_timeout_seconds + 1)

    report = asyncio.run(runtime.maintenance_tick())

    assert report["requeued"] == 1
    assert runtime.queue.get_message(message_id).status == "pending"


def test_outbox_tick_is_noop_without_publisher(runtime):
    assert asyncio.run(runtime.outbox_tick()) == 0


def test_tick_loops_start_only_when_enabled(session_factory):
    runtime = MessagingRuntime(
        make_settings(background_workers_enabled=True, delivery_sweep_interval_seconds=0.01),
        session_factory,
        FakeChannelFactory(),
    )

    async def scenario():
        await runtime.start()
        started = len(runtime._tasks)
        await asyncio.sleep(0.02)
        await runtime.shutdown()
        return started

    assert asyncio.run(scenario()) == 3
    assert runtime.queue.status_counts() == {"pending": 0, "processing": 0, "sent": 0, "failed": 0}


def leased_runtime(session_factory, redis_client, worker_id, factory=None):
    config = make_settings(tenant_lease_enabled=True, worker_id=worker_id, resume_sessions_on_start=True)
    return MessagingRuntime(config, session_factory, factory or FakeChannelFactory(), redis_client=redis_client)


def test_restart_leaves_sessions_leased_by_other_workers(session_factory):
    redis_client = FakeRedis()
    worker_a = leased_runtime(session_factory, redis_client, "worker-a")
    factory_b = FakeChannelFactory()
    worker_b = leased_runtime(session_factory, redis_client, "worker-b", factory_b)

    async def scenario():
        await worker_a.start()
        await worker_a.pool.connect("salon-a")
        await worker_b.start()
        return worker_a.pool.is_ready("salon-a")

    assert asyncio.run(scenario()) is True
    session = worker_a.store.get_session("salon-a")
    assert session.connection_state == ConnectionState.READY
    assert session.last_disconnect_reason is None
    assert factory_b.clients.get("salon-a", []) == []
    with session_factory() as db:
        types = db.execute(select(SessionEventLog.event_type)).scalars().all()
    assert "process_restart" not in types


def test_restart_takes_over_sessions_whose_lease_expired(session_factory):
    redis_client = FakeRedis()
    factory = FakeChannelFactory()
    runtime = leased_runtime(session_factory, redis_client, "worker-b", factory)
    seed_live_session(runtime, "salon-a")

    async def scenario():
        await runtime.start()
        ready = runtime.pool.is_ready("salon-a")
        await runtime.shutdown()
        return ready

    assert asyncio.run(scenario()) is True
    assert len(factory.clients["salon-a"]) == 1
    with session_factory() as db:
        types = db.execute(select(SessionEventLog.event_type)).scalars().all()
    assert "process_restart" in types
