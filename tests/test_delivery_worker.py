import asyncio
import random

from salonping.common.errors import PermanentDeliveryError, TransientDeliveryError
from salonping.services.messaging.worker import HumanPacing, SweepResult


RECIPIENT = "+15551234567"


def test_typing_delay_scales_with_length_and_is_clamped():
    pacing = HumanPacing(min_seconds=2, per_char_seconds=0.03, max_seconds=8, jitter_seconds=0)

    assert pacing.typing_delay("x" * 10) == 2
    assert pacing.typing_delay("x" * 100) == 3.0
    assert pacing.typing_delay("x" * 1000) == 8


def test_pacing_waits_before_and_after_send():
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    pacing = HumanPacing(
        min_seconds=1, per_char_seconds=0.0, max_seconds=5, jitter_seconds=0.5, gap_seconds=1, sleep=fake_sleep,
        rng=random.Random(7),
    )

    async def scenario():
        await pacing.before_send("hello")
        await pacing.after_send()

    asyncio.run(scenario())

    assert 1 <= slept[0] <= 1.5
    assert slept[1] == 1


def test_burst_beyond_rate_limit_is_deferred_not_failed(runtime, channel_factory):
    for i in range(15):
        runtime.queue.enqueue("salon-a", RECIPIENT, f"message {i}")

    async def scenario():
        await runtime.pool.connect("salon-a")
        return [await runtime.worker.sweep_tenant("salon-a") for _ in range(3)]

    results = asyncio.run(scenario())

    assert [r.processed for r in results] == [5, 5, 0]
    assert results[2].deferred == 5
    assert sum(r.failed for r in results) == 0
    counts = runtime.queue.status_counts("salon-a")
    assert counts["sent"] == 10
    assert counts["pending"] == 5
    assert all(m.attempts == 0 for m in runtime.queue.list_messages("salon-a", status="pending"))
    assert len(channel_factory.latest("salon-a").sent) == 10
    assert runtime.store.get_session("salon-a").messages_sent_today == 10


def test_higher_priority_drains_first(runtime, channel_factory):
    runtime.queue.enqueue("salon-a", RECIPIENT, "first normal", priority=2)
    runtime.queue.enqueue("salon-a", RECIPIENT, "urgent", priority=1)
    runtime.queue.enqueue("salon-a", RECIPIENT, "second normal", priority=2)

    async def scenario():
        await runtime.pool.connect("salon-a")
        return await runtime.worker.sweep_tenant("salon-a")

    result = asyncio.run(scenario())

    assert result.processed == 3
    bodies = [body for _, body in channel_factory.latest("salon-a").sent]
    assert bodies[0] == "urgent"
    assert sorted(bodies[1:]) == ["first normal", "second normal"]


def test_tenant_without_session_processes_nothing(runtime):
    message_id = runtime.queue.enqueue("salon-a", RECIPIENT, "hi")

    result = asyncio.run(runtime.worker.sweep_tenant("salon-a"))

    assert (result.processed, result.failed) == (0, 0)
    row = runtime.queue.get_message(message_id)
    assert (row.status, row.attempts) == ("pending", 0)


def test_disconnect_mid_sweep_settles_in_flight_and_claims_nothing_new(runtime, channel_factory):
    ids = [runtime.queue.enqueue("salon-a", RECIPIENT, f"message {i}", priority=i) for i in range(3)]

    async def scenario():
        await runtime.pool.connect("salon-a")
        client = channel_factory.latest("salon-a")
        client.send_gate = asyncio.Event()
        sweep = asyncio.create_task(runtime.worker.sweep_tenant("salon-a"))
        await client.send_started.wait()
        disconnect = asyncio.create_task(runtime.pool.disconnect("salon-a"))
        await asyncio.sleep(0)
        client.send_gate.set()
        result = await sweep
        await disconnect
        after = await runtime.worker.sweep_tenant("salon-a")
        return result, after

    result, after = asyncio.run(scenario())

    assert result.processed == 1
    assert result.deferred == 2
    assert after == SweepResult()
    statuses = [runtime.queue.get_message(message_id).status for message_id in ids]
    assert statuses == ["sent", "pending", "pending"]
    assert runtime.queue.get_message(ids[1]).attempts == 0


def test_transient_error_is_retried_and_permanent_error_fails(runtime, channel_factory):
    retry_id = runtime.queue.enqueue("salon-a", RECIPIENT, "retry me", priority=1)
    fail_id = runtime.queue.enqueue("salon-a", RECIPIENT, "reject me", priority=2)

    async def scenario():
        await runtime.pool.connect("salon-a")
        channel_factory.latest("salon-a").send_errors = [
            TransientDeliveryError("bridge status=503"),
            PermanentDeliveryError("bridge rejected message status=400"),
        ]
        return await runtime.worker.sweep_tenant("salon-a")

    result = asyncio.run(scenario())

    assert (result.processed, result.retried, result.failed) == (0, 1, 1)
    retried = runtime.queue.get_message(retry_id)
    assert (retried.status, retried.attempts) == ("pending", 1)
    assert retried.last_error == "bridge status=503"
    assert runtime.queue.get_message(fail_id).status == "failed"


def test_sweep_all_covers_every_ready_tenant(runtime):
    runtime.queue.enqueue("salon-a", RECIPIENT, "a")
    runtime.queue.enqueue("salon-b", RECIPIENT, "b")
    runtime.queue.enqueue("salon-c", RECIPIENT, "c")

    async def scenario():
        await runtime.pool.connect("salon-a")
        await runtime.pool.connect("salon-b")
        return await runtime.delivery_tick()

    results = asyncio.run(scenario())

    assert sorted(results) == ["salon-a", "salon-b"]
    assert all(r.processed == 1 for r in results.values())
    assert runtime.queue.status_counts("salon-c")["pending"] == 1
