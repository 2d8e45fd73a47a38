import asyncio

from sqlalchemy import select

from salonping.common.events import MESSAGE_SENT_TOPIC
from salonping.common.outbox import OutboxPublisher
from salonping.services.messaging.models import OutboxEvent
from salonping.services.messaging.queue import MessageQueue


class FakeKafka:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published = []

    async def publish(self, topic, event):
        if self.fail:
            raise ConnectionError("broker down")
        self.published.append((topic, event))


def stage_sent_event(session_factory):
    queue = MessageQueue(session_factory)
    message_id = queue.enqueue("salon-a", "+15551234567", "hi")
    queue.claim_due("salon-a", 1)
    queue.mark_sent(message_id, "wamid-1")
    return message_id


def test_publisher_delivers_and_marks_sent(session_factory):
    message_id = stage_sent_event(session_factory)
    kafka = FakeKafka()

    published = asyncio.run(OutboxPublisher(session_factory, OutboxEvent, kafka, "messaging").publish_batch())

    assert published == 1
    [(topic, envelope)] = kafka.published
    assert topic == MESSAGE_SENT_TOPIC
    assert envelope.tenant_id == "salon-a"
    assert envelope.aggregate_id == message_id
    with session_factory() as db:
        assert db.execute(select(OutboxEvent.status)).scalar_one() == "SENT"


def test_publish_failure_requeues_event(session_factory):
    stage_sent_event(session_factory)

    published = asyncio.run(
        OutboxPublisher(session_factory, OutboxEvent, FakeKafka(fail=True), "messaging").publish_batch()
    )

    assert published == 0
    with session_factory() as db:
        assert db.execute(select(OutboxEvent.status)).scalar_one() == "PENDING"
