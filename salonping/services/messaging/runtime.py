"""Process-wide registry wiring the engine components together.

One `MessagingRuntime` per process owns the pool, queue, worker, scheduler and
the background tick loops. The HTTP app receives it explicitly, and tests
build one around an in-memory database and a fake channel client factory.
"""

import asyncio
import time

import redis

from salonping.common.clock import utcnow
from salonping.common.config import CommonSettings, settings
from salonping.common.db import SessionLocal, engine, init_db
from salonping.common.errors import SessionError
from salonping.common.events import KafkaBus
from salonping.common.logging import logger
from salonping.common.metrics import queue_depth
from salonping.common.outbox import OutboxPublisher
from salonping.common.state_machine import ConnectionState, Disconnected, LIVE_STATES
from salonping.common.ticker import run_periodically
from salonping.services.messaging.audit import AuditLog
from salonping.services.messaging.channel import ChannelClientFactory, waha_client_factory
from salonping.services.messaging.lease import TenantLease
from salonping.services.messaging.models import OutboxEvent
from salonping.services.messaging.pool import ChannelClientPool
from salonping.services.messaging.queue import MessageQueue, RetryPolicy
from salonping.services.messaging.rate_limiter import RateLimiter
from salonping.services.messaging.session_store import SessionStore
from salonping.services.messaging.worker import DeliveryWorker, HumanPacing, SweepResult
from salonping.services.reminders.scheduler import ReminderScheduler


class MessagingRuntime:
    def __init__(
        self,
        config: CommonSettings,
        session_factory,
        client_factory: ChannelClientFactory,
        redis_client: redis.Redis | None = None,
        kafka: KafkaBus | None = None,
        sleep=asyncio.sleep,
        clock=utcnow,
        monotonic=time.monotonic,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.sleep = sleep
        self.clock = clock
        self.kafka = kafka

        self.store = SessionStore(session_factory, clock=clock)
        self.audit = AuditLog(session_factory)
        lease = None
        if config.tenant_lease_enabled and redis_client is not None:
            lease = TenantLease(redis_client, config.worker_id, config.tenant_lease_ttl_seconds)
        self.pool = ChannelClientPool(
            self.store,
            self.audit,
            client_factory,
            pairing_timeout_seconds=config.pairing_timeout_seconds,
            send_timeout_seconds=config.send_timeout_seconds,
            lease=lease,
            service_name=config.service_name,
            clock=clock,
            sleep=sleep,
        )
        self.rate_limiter = RateLimiter(
            limit=config.rate_limit_per_minute,
            window_seconds=config.rate_limit_window_seconds,
            clock=monotonic,
        )
        self.queue = MessageQueue(
            session_factory,
            RetryPolicy(config.retry_base_seconds, config.retry_max_delay_seconds),
            default_max_attempts=config.queue_max_attempts,
            worker_id=config.worker_id,
            service_name=config.service_name,
            clock=clock,
        )
        self.worker = DeliveryWorker(
            self.queue,
            self.pool,
            self.rate_limiter,
            self.store,
            self.audit,
            HumanPacing(
                min_seconds=config.pacing_min_seconds,
                per_char_seconds=config.pacing_per_char_seconds,
                max_seconds=config.pacing_max_seconds,
                jitter_seconds=config.pacing_jitter_seconds,
                gap_seconds=config.pacing_gap_seconds,
                sleep=sleep,
            ),
            batch_size=config.claim_batch_size,
            service_name=config.service_name,
        )
        self.scheduler = ReminderScheduler(
            session_factory,
            self.queue,
            window_minutes=config.reminder_window_minutes,
            trigger=self.worker.sweep_tenant,
            service_name=config.service_name,
            clock=clock,
        )
        self.publisher = None
        if kafka is not None and config.outbox_publisher_enabled:
            self.publisher = OutboxPublisher(session_factory, OutboxEvent, kafka, config.service_name)
        self._tasks: list[asyncio.Task] = []

    # -- ticks ---------------------------------------------------------

    async def delivery_tick(self) -> dict[str, SweepResult]:
        """Sweep ready tenants that have due messages."""

        due = set(self.queue.tenants_with_due())
        return await self.worker.sweep_all([tenant_id for tenant_id in self.pool.ready_tenants() if tenant_id in due])

    async def reminder_tick(self) -> dict[str, int]:
        return await self.scheduler.sweep()

    async def maintenance_tick(self) -> dict:
        """Recover orphaned claims, renew leases, reap idle sessions, refresh gauges."""

        requeued = self.queue.requeue_stale(self.config.processing_timeout_seconds)
        lost = await self.pool.renew_leases()
        reaped = await self.pool.reap_idle(self.config.inactivity_timeout_seconds)
        for status, count in self.queue.status_counts().items():
            queue_depth.labels(service=self.config.service_name, status=status).set(count)
        if requeued or lost or reaped:
            logger.info("maintenance requeued=%s leases_lost=%s reaped=%s", requeued, lost, reaped)
        return {"requeued": requeued, "leases_lost": lost, "reaped": reaped}

    async def outbox_tick(self) -> int:
        if self.publisher is None:
            return 0
        return await self.publisher.publish_batch()

    # -- lifecycle -----------------------------------------------------

    async def recover_sessions(self) -> list[str]:
        """Reset rows left live by a previous process; returns tenants that were live.

        With the tenant lease enabled, rows whose lease another worker holds
        belong to a running process and are left alone.
        """

        stale_states = {ConnectionState.CONNECTING} | set(LIVE_STATES)
        lease = self.pool.lease
        resumable = []
        skipped = []
        for session in self.store.list_sessions(stale_states):
            if lease is not None and lease.held_elsewhere(session.tenant_id):
                skipped.append(session.tenant_id)
                continue
            await self.pool.apply_session_event(session.tenant_id, Disconnected(reason="process_restart"))
            if session.connection_state in LIVE_STATES:
                resumable.append(session.tenant_id)
        if resumable:
            logger.info("sessions_recovered tenants=%s", resumable)
        if skipped:
            logger.info("sessions_owned_elsewhere tenants=%s", skipped)
        return resumable

    async def start(self) -> None:
        resumable = await self.recover_sessions()
        if self.config.resume_sessions_on_start:
            for tenant_id in resumable:
                try:
                    await self.pool.connect(tenant_id)
                except SessionError as exc:
                    logger.warning("session_resume_failed tenant_id=%s error=%s", tenant_id, exc)

        if not self.config.background_workers_enabled:
            return
        loops = [
            ("delivery", self.config.delivery_sweep_interval_seconds, self.delivery_tick),
            ("reminders", self.config.reminder_sweep_interval_seconds, self.reminder_tick),
            ("maintenance", self.config.maintenance_interval_seconds, self.maintenance_tick),
        ]
        if self.publisher is not None:
            loops.append(("outbox", 1.0, self.outbox_tick))
        for name, interval, tick in loops:
            self._tasks.append(asyncio.create_task(run_periodically(name, interval, tick, sleep=self.sleep)))

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.pool.shutdown()
        if self.kafka is not None:
            await self.kafka.close()


def build_runtime(config: CommonSettings = settings) -> MessagingRuntime:
    """Production wiring: process engine, WAHA bridge, optional Redis lease and Kafka."""

    if config.auto_create_schema:
        init_db(engine)
    redis_client = redis.Redis.from_url(config.redis_url) if config.tenant_lease_enabled else None
    kafka = KafkaBus(config.kafka_bootstrap_servers) if config.outbox_publisher_enabled else None
    return MessagingRuntime(
        config,
        SessionLocal,
        waha_client_factory(
            config.channel_bridge_url,
            config.channel_bridge_api_key,
            config.channel_poll_interval_seconds,
        ),
        redis_client=redis_client,
        kafka=kafka,
    )
