import asyncio
from datetime import timedelta

import pytest

from salonping.common.clock import as_utc
from salonping.services.messaging.queue import MessageQueue
from salonping.services.reminders.models import Appointment, ReminderSetting, TenantProfile
from salonping.services.reminders.scheduler import ReminderScheduler
from salonping.services.reminders.templates import render_template


TEMPLATE = "Hi {clientName}! {service} at {salonName} on {date} {time}. Reply {code} to cancel, {clientName}."


@pytest.fixture
def seeded(session_factory, clock):
    now = clock.now
    with session_factory() as db:
        db.add(TenantProfile(tenant_id="salon-a", salon_name="Studio Nova", timezone="Asia/Kolkata"))
        db.add(
            ReminderSetting(
                tenant_id="salon-a", reminder_kind="2_hours", is_enabled=True, message_template=TEMPLATE, priority=1
            )
        )
        db.add(ReminderSetting(tenant_id="salon-a", reminder_kind="24_hours", is_enabled=False))
        db.add_all(
            [
                Appointment(
                    id="due",
                    tenant_id="salon-a",
                    client_name="Ana",
                    client_phone="+91 98765 43210",
                    service="Haircut",
                    starts_at=now + timedelta(hours=2, minutes=10),
                    status="Confirmed",
                ),
                Appointment(
                    id="too-late",
                    tenant_id="salon-a",
                    client_name="Bea",
                    client_phone="+919876543211",
                    service="Color",
                    starts_at=now + timedelta(hours=4),
                    status="Scheduled",
                ),
                Appointment(
                    id="cancelled",
                    tenant_id="salon-a",
                    client_name="Cy",
                    client_phone="+919876543212",
                    service="Nails",
                    starts_at=now + timedelta(hours=2),
                    status="Cancelled",
                ),
                Appointment(
                    id="no-phone",
                    tenant_id="salon-a",
                    client_name="Di",
                    client_phone=None,
                    service="Nails",
                    starts_at=now + timedelta(hours=2),
                    status="Scheduled",
                ),
            ]
        )
        db.commit()


def test_render_template_replaces_every_known_placeholder():
    rendered = render_template("{clientName} {clientName} {other}", {"clientName": "Ana"})
    assert rendered == "Ana Ana {other}"


def test_sweep_enqueues_due_reminders_once(session_factory, clock, seeded):
    queue = MessageQueue(session_factory, clock=clock)
    triggered = []

    async def trigger(tenant_id):
        triggered.append(tenant_id)

    scheduler = ReminderScheduler(session_factory, queue, window_minutes=30, trigger=trigger, clock=clock)

    first = asyncio.run(scheduler.sweep())
    second = asyncio.run(scheduler.sweep())

    assert first == {"salon-a": 1}
    assert second == {}
    assert triggered == ["salon-a"]

    [message] = queue.list_messages("salon-a")
    assert message.appointment_ref == "due"
    assert message.reminder_kind == "2_hours"
    assert message.message_type == "reminder"
    assert message.priority == 1
    assert as_utc(message.scheduled_for) == clock.now + timedelta(minutes=10)
    assert message.body == (
        "Hi Ana! Haircut at Studio Nova on 2026-03-02 16:40. Reply {code} to cancel, Ana."
    )


def test_reminder_moment_in_the_past_is_scheduled_now(session_factory, clock, seeded):
    queue = MessageQueue(session_factory, clock=clock)
    clock.advance(minutes=25)
    scheduler = ReminderScheduler(session_factory, queue, window_minutes=30, clock=clock)

    assert asyncio.run(scheduler.sweep()) == {"salon-a": 1}
    [message] = queue.list_messages("salon-a")
    assert as_utc(message.scheduled_for) == clock.now


def test_trigger_failure_does_not_break_sweep(session_factory, clock, seeded):
    async def broken(tenant_id):
        raise RuntimeError("worker unavailable")

    scheduler = ReminderScheduler(
        session_factory, MessageQueue(session_factory, clock=clock), window_minutes=30, trigger=broken, clock=clock
    )

    assert asyncio.run(scheduler.sweep()) == {"salon-a": 1}
