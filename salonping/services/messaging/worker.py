"""Delivery worker: drains due queue rows through the channel pool.

A sweep for one tenant claims a small batch, then for each message checks the
rate limiter, waits a human-like typing delay, sends, and settles the row.
Nothing raised while handling a message escapes the sweep.
"""

import asyncio
import random
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

from salonping.common.errors import ChannelNotReady, DeliveryError, SessionNotFound
from salonping.common.logging import logger, message_id_ctx, tenant_id_ctx
from salonping.common.metrics import rate_limit_deferrals_total
from salonping.common.tracing import tracer
from salonping.services.messaging.audit import AuditLog
from salonping.services.messaging.pool import ChannelClientPool
from salonping.services.messaging.queue import ClaimedMessage, MessageQueue
from salonping.services.messaging.rate_limiter import RateLimiter
from salonping.services.messaging.session_store import SessionStore


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0

    def add(self, other: "SweepResult") -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.retried += other.retried
        self.deferred += other.deferred

    def as_dict(self) -> dict:
        return asdict(self)


class HumanPacing:
    """Typing-style delay before a send and a fixed gap after it."""

    def __init__(
        self,
        min_seconds: float = 2.0,
        per_char_seconds: float = 0.03,
        max_seconds: float = 8.0,
        jitter_seconds: float = 1.0,
        gap_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.min_seconds = min_seconds
        self.per_char_seconds = per_char_seconds
        self.max_seconds = max_seconds
        self.jitter_seconds = jitter_seconds
        self.gap_seconds = gap_seconds
        self.sleep = sleep
        self.rng = rng or random.Random()

    def typing_delay(self, body: str) -> float:
        base = min(self.max_seconds, max(self.min_seconds, len(body) * self.per_char_seconds))
        jitter = self.rng.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return base + jitter

    async def before_send(self, body: str) -> None:
        await self.sleep(self.typing_delay(body))

    async def after_send(self) -> None:
        if self.gap_seconds > 0:
            await self.sleep(self.gap_seconds)


class DeliveryWorker:
    def __init__(
        self,
        queue: MessageQueue,
        pool: ChannelClientPool,
        rate_limiter: RateLimiter,
        store: SessionStore,
        audit: AuditLog,
        pacing: HumanPacing,
        batch_size: int = 5,
        service_name: str = "messaging",
    ) -> None:
        self.queue = queue
        self.pool = pool
        self.rate_limiter = rate_limiter
        self.store = store
        self.audit = audit
        self.pacing = pacing
        self.batch_size = batch_size
        self.service_name = service_name
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def sweep_tenant(self, tenant_id: str) -> SweepResult:
        """Run one sweep for a tenant; tenants that are not ready get an empty result."""

        tenant_id_ctx.set(tenant_id)
        result = SweepResult()
        async with self._locks[tenant_id]:
            if not self.pool.is_ready(tenant_id):
                return result
            with tracer.start_as_current_span("delivery.sweep_tenant") as span:
                span.set_attribute("tenant.id", tenant_id)
                claimed = self.queue.claim_due(tenant_id, self.batch_size)
                for index, message in enumerate(claimed):
                    if not self.pool.is_ready(tenant_id):
                        result.deferred += self._release(claimed[index:])
                        logger.info("sweep_stopped_not_ready tenant_id=%s released=%s", tenant_id, len(claimed) - index)
                        break
                    if not self.rate_limiter.try_consume(tenant_id):
                        released = self._release(claimed[index:])
                        result.deferred += released
                        rate_limit_deferrals_total.labels(service=self.service_name).inc(released)
                        logger.info("rate_limited tenant_id=%s deferred=%s", tenant_id, released)
                        break
                    if not await self._deliver(message, result):
                        result.deferred += self._release(claimed[index + 1 :])
                        break
                span.set_attribute("delivery.processed", result.processed)
        if claimed:
            logger.info("sweep_done tenant_id=%s %s", tenant_id, result.as_dict())
        return result

    async def _deliver(self, message: ClaimedMessage, result: SweepResult) -> bool:
        """Send one claimed message and settle it; False stops the sweep."""

        message_id_ctx.set(message.id)
        try:
            await self.pacing.before_send(message.body)
            delivery = await self.pool.send(message.tenant_id, message.recipient_address, message.body)
        except ChannelNotReady:
            # Disconnected between the readiness check and the send.
            self.queue.release(message.id)
            result.deferred += 1
            return False
        except DeliveryError as exc:
            self._settle_failure(message, str(exc), exc.retryable, result)
            return True
        except Exception as exc:
            logger.exception("unexpected_send_error tenant_id=%s message_id=%s", message.tenant_id, message.id)
            self._settle_failure(message, f"unexpected error: {exc}", True, result)
            return True
        finally:
            message_id_ctx.set("")

        if self.queue.mark_sent(message.id, delivery.protocol_message_id):
            result.processed += 1
            try:
                self.store.record_send(message.tenant_id)
            except SessionNotFound:
                logger.warning("record_send_missing_session tenant_id=%s", message.tenant_id)
        await self.pacing.after_send()
        return True

    def _settle_failure(self, message: ClaimedMessage, error_text: str, retryable: bool, result: SweepResult) -> None:
        outcome = self.queue.mark_failed(message.id, error_text, retryable=retryable)
        if outcome == "failed":
            result.failed += 1
        elif outcome == "pending":
            result.retried += 1
        self.audit.record_event(
            message.tenant_id,
            "delivery_error",
            {
                "message_id": message.id,
                "attempt": message.attempts,
                "retryable": retryable,
                "outcome": outcome,
                "error": error_text,
            },
            severity="error" if outcome == "failed" else "warning",
        )

    def _release(self, messages: list[ClaimedMessage]) -> int:
        return sum(1 for message in messages if self.queue.release(message.id))

    async def sweep_all(self, tenant_ids: list[str] | None = None) -> dict[str, SweepResult]:
        """Sweep every ready tenant concurrently, one task per tenant."""

        tenant_ids = tenant_ids if tenant_ids is not None else self.pool.ready_tenants()
        outcomes = await asyncio.gather(
            *(self.sweep_tenant(tenant_id) for tenant_id in tenant_ids), return_exceptions=True
        )
        results = {}
        for tenant_id, outcome in zip(tenant_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("sweep_failed tenant_id=%s error=%s", tenant_id, outcome)
                self.audit.record_event(tenant_id, "sweep_error", {"error": str(outcome)}, severity="error")
                outcome = SweepResult()
            results[tenant_id] = outcome
        return results
