"""Periodic appointment reminder sweep.

For every enabled reminder setting the sweep looks for upcoming appointments
whose reminder moment (`starts_at - offset`) falls within the sweep window
around now, renders the tenant template and enqueues one reminder per
(appointment, kind). Re-running the sweep inside the same window enqueues
nothing new.
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import select

from salonping.common.clock import as_utc, utcnow
from salonping.common.logging import logger, tenant_id_ctx
from salonping.common.metrics import reminders_enqueued_total
from salonping.common.tracing import tracer
from salonping.services.messaging.queue import MessageQueue
from salonping.services.reminders.models import Appointment, ReminderSetting, TenantProfile
from salonping.services.reminders.templates import DEFAULT_TEMPLATE, appointment_values, render_template


REMINDABLE_STATUSES = ("Scheduled", "Confirmed")

# Offsets for the reminder kinds the CRM offers when a setting has none.
DEFAULT_OFFSETS_MINUTES = {
    "24_hours": 24 * 60,
    "2_hours": 2 * 60,
    "1_hour": 60,
}


def offset_for(setting: ReminderSetting) -> timedelta | None:
    minutes = setting.offset_minutes
    if minutes is None:
        minutes = DEFAULT_OFFSETS_MINUTES.get(setting.reminder_kind)
    return timedelta(minutes=minutes) if minutes is not None else None


class ReminderScheduler:
    def __init__(
        self,
        session_factory,
        queue: MessageQueue,
        window_minutes: int = 30,
        trigger: Callable[[str], Awaitable[object]] | None = None,
        service_name: str = "messaging",
        clock=utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.window = timedelta(minutes=window_minutes)
        self.trigger = trigger
        self.service_name = service_name
        self.clock = clock

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Enqueue due reminders; returns enqueued counts for tenants that got any.

        Each affected tenant's delivery sweep is triggered afterwards.
        """

        now = as_utc(now) or self.clock()
        with tracer.start_as_current_span("reminders.sweep"):
            with self.session_factory() as db:
                settings = (
                    db.execute(
                        select(ReminderSetting)
                        .where(ReminderSetting.is_enabled.is_(True))
                        .order_by(ReminderSetting.tenant_id, ReminderSetting.reminder_kind)
                    )
                    .scalars()
                    .all()
                )
            counts: dict[str, int] = {}
            for setting in settings:
                tenant_id_ctx.set(setting.tenant_id)
                try:
                    enqueued = self._sweep_setting(setting, now)
                except Exception as exc:
                    logger.exception(
                        "reminder_sweep_failed tenant_id=%s kind=%s error=%s",
                        setting.tenant_id,
                        setting.reminder_kind,
                        exc,
                    )
                    continue
                if enqueued:
                    counts[setting.tenant_id] = counts.get(setting.tenant_id, 0) + enqueued
            tenant_id_ctx.set("")

        logger.info("reminder_sweep_done settings=%s enqueued=%s", len(settings), counts)
        if self.trigger is not None:
            for tenant_id in counts:
                try:
                    await self.trigger(tenant_id)
                except Exception as exc:
                    logger.error("reminder_trigger_failed tenant_id=%s error=%s", tenant_id, exc)
        return counts

    def _sweep_setting(self, setting: ReminderSetting, now: datetime) -> int:
        offset = offset_for(setting)
        if offset is None:
            logger.warning("reminder_kind_without_offset tenant_id=%s kind=%s", setting.tenant_id, setting.reminder_kind)
            return 0

        earliest = max(now, now + offset - self.window)
        latest = now + offset + self.window
        with self.session_factory() as db:
            profile = db.get(TenantProfile, setting.tenant_id)
            appointments = (
                db.execute(
                    select(Appointment)
                    .where(
                        Appointment.tenant_id == setting.tenant_id,
                        Appointment.status.in_(REMINDABLE_STATUSES),
                        Appointment.client_phone.is_not(None),
                        Appointment.client_phone != "",
                        Appointment.starts_at > earliest,
                        Appointment.starts_at <= latest,
                    )
                    .order_by(Appointment.starts_at)
                )
                .scalars()
                .all()
            )

        salon_name = profile.salon_name if profile else ""
        timezone_name = profile.timezone if profile else "UTC"
        template = setting.message_template or DEFAULT_TEMPLATE
        enqueued = 0
        for appointment in appointments:
            starts_at = as_utc(appointment.starts_at)
            body = render_template(
                template,
                appointment_values(appointment.client_name, appointment.service, starts_at, salon_name, timezone_name),
            )
            message_id = self.queue.enqueue_reminder(
                setting.tenant_id,
                appointment.client_phone,
                body,
                appointment_ref=appointment.id,
                reminder_kind=setting.reminder_kind,
                scheduled_for=max(now, starts_at - offset),
                priority=setting.priority,
            )
            if message_id is None:
                continue
            enqueued += 1
            reminders_enqueued_total.labels(service=self.service_name, reminder_kind=setting.reminder_kind).inc()
            logger.info(
                "reminder_enqueued tenant_id=%s appointment=%s kind=%s message_id=%s",
                setting.tenant_id,
                appointment.id,
                setting.reminder_kind,
                message_id,
            )
        return enqueued
