"""Owner of every live channel client in this process.

The pool is the only place that creates or tears down protocol clients and the
only writer of session lifecycle fields. Per tenant it serializes connect,
disconnect and send with asyncio locks; lifecycle events coming back from a
client are applied through `apply_event` under a separate write lock so an
event never waits behind a slow send.
"""

import asyncio
from collections import defaultdict
from time import perf_counter
from typing import Awaitable, Callable

from salonping.common.clock import utcnow
from salonping.common.errors import (
    ChannelNotReady,
    InvalidTransition,
    SessionError,
    TenantOwnedElsewhere,
    TransientDeliveryError,
)
from salonping.common.logging import logger, tenant_id_ctx
from salonping.common.metrics import live_channel_clients, send_latency_seconds, session_events_total
from salonping.common.state_machine import (
    TEARDOWN_EVENTS,
    ConnectionState,
    Disconnected,
    LIVE_STATES,
    MessageReceived,
    PairingCodeIssued,
    PairingTimedOut,
    Ready,
    SessionEvent,
    SessionSnapshot,
    apply_event,
)
from salonping.common.tracing import tracer
from salonping.services.messaging.audit import AuditLog
from salonping.services.messaging.channel import ChannelClient, ChannelClientFactory, DeliveryResult, to_chat_id
from salonping.services.messaging.lease import TenantLease
from salonping.services.messaging.session_store import SessionStore


DISCONNECT_EVENT_TYPES = {
    "user_request": "user_disconnect",
    "inactivity": "inactivity_disconnect",
    "protocol_disconnect": "protocol_disconnect",
    "process_restart": "process_restart",
    "lease_lost": "lease_lost",
}


def event_type_for(event: SessionEvent) -> str:
    if isinstance(event, Disconnected):
        return DISCONNECT_EVENT_TYPES.get(event.reason, "disconnected")
    return event.kind


class ChannelClientPool:
    """Exactly one live `ChannelClient` per tenant in this process."""

    def __init__(
        self,
        store: SessionStore,
        audit: AuditLog,
        client_factory: ChannelClientFactory,
        pairing_timeout_seconds: float = 120.0,
        send_timeout_seconds: float = 30.0,
        lease: TenantLease | None = None,
        service_name: str = "messaging",
        clock=utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.audit = audit
        self.client_factory = client_factory
        self.pairing_timeout_seconds = pairing_timeout_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self.lease = lease
        self.service_name = service_name
        self.clock = clock
        self.sleep = sleep
        self._clients: dict[str, ChannelClient] = {}
        self._states: dict[str, ConnectionState] = {}
        self._generation: dict[str, int] = defaultdict(int)
        self._op_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._send_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._write_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._draining: set[str] = set()
        self._watchdogs: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    # -- projections ---------------------------------------------------

    def is_ready(self, tenant_id: str) -> bool:
        return (
            tenant_id in self._clients
            and tenant_id not in self._draining
            and self._states.get(tenant_id) == ConnectionState.READY
        )

    def is_draining(self, tenant_id: str) -> bool:
        return tenant_id in self._draining

    def ready_tenants(self) -> list[str]:
        return sorted(tenant_id for tenant_id in self._clients if self.is_ready(tenant_id))

    def active_tenants(self) -> list[str]:
        return sorted(self._clients)

    def _update_gauge(self) -> None:
        live_channel_clients.labels(service=self.service_name).set(len(self._clients))

    # -- lifecycle -----------------------------------------------------

    async def connect(self, tenant_id: str) -> SessionSnapshot:
        """Start pairing or resumption; a no-op while a client already exists."""

        tenant_id_ctx.set(tenant_id)
        async with self._op_locks[tenant_id]:
            if tenant_id in self._clients:
                return self.store.find_session(tenant_id) or SessionSnapshot(tenant_id=tenant_id)

            if self.lease is not None and not self.lease.acquire(tenant_id):
                self.audit.record_event(
                    tenant_id, "lease_conflict", {"owner": self.lease.owner(tenant_id)}, severity="warning"
                )
                raise TenantOwnedElsewhere(f"tenant {tenant_id} is owned by another worker")

            session = self.store.find_session(tenant_id)
            if session is None:
                session = self.store.upsert_session(tenant_id, credentials_ref=f"salon_{tenant_id}")
            elif session.connection_state != ConnectionState.DISCONNECTED:
                # A live row without a live client is left over from another
                # process; start again from disconnected.
                session = self.store.save(apply_event(session, Disconnected(reason="stale_session"), self.clock()))

            self._generation[tenant_id] += 1
            generation = self._generation[tenant_id]

            async def on_event(event: SessionEvent) -> None:
                await self.handle_event(tenant_id, generation, event)

            client = self.client_factory(tenant_id, on_event)
            self._clients[tenant_id] = client
            self._states[tenant_id] = ConnectionState.DISCONNECTED
            self._draining.discard(tenant_id)
            self._update_gauge()
            self.audit.record_event(tenant_id, "connect_requested", {"generation": generation}, session=session)
            logger.info("channel_connect tenant_id=%s generation=%s", tenant_id, generation)

            try:
                await client.start()
            except Exception as exc:
                self._forget_client(tenant_id)
                if self.lease is not None:
                    self.lease.release(tenant_id)
                await self._stop_client(tenant_id, client)
                self.audit.record_event(tenant_id, "connect_failed", {"error": str(exc)}, severity="error")
                raise SessionError(f"channel client failed to start: {exc}") from exc

            self._start_watchdog(tenant_id, generation)
            return self.store.find_session(tenant_id) or session

    async def disconnect(self, tenant_id: str, reason: str = "user_request") -> SessionSnapshot:
        """Drain and tear down the tenant's client; safe when already disconnected.

        The tenant stops accepting new sends first, then the call waits for an
        in-flight send to settle before the client is stopped.
        """

        tenant_id_ctx.set(tenant_id)
        self._draining.add(tenant_id)
        try:
            async with self._op_locks[tenant_id]:
                async with self._send_locks[tenant_id]:
                    client = self._forget_client(tenant_id)
                if client is not None:
                    await self._stop_client(tenant_id, client)
                    if self.lease is not None:
                        self.lease.release(tenant_id)
                session = self.store.find_session(tenant_id)
                if session is None:
                    return SessionSnapshot(tenant_id=tenant_id)
                if reason == "lease_lost" and self.lease is not None and self.lease.held_elsewhere(tenant_id):
                    # The new owner writes the row from here on.
                    self.audit.record_event(
                        tenant_id, "lease_lost", {"owner": self.lease.owner(tenant_id)}, severity="warning"
                    )
                    return session
                if client is None and session.connection_state == ConnectionState.DISCONNECTED:
                    return session
                return await self.apply_session_event(tenant_id, Disconnected(reason=reason)) or session
        finally:
            self._draining.discard(tenant_id)

    async def shutdown(self) -> None:
        """Stop every client without touching session rows.

        Rows stay live so the next process start resets and resumes them.
        """

        for tenant_id in list(self._clients):
            client = self._forget_client(tenant_id)
            if client is not None:
                await self._stop_client(tenant_id, client)
                if self.lease is not None:
                    self.lease.release(tenant_id)
        for task in list(self._background):
            task.cancel()

    def _forget_client(self, tenant_id: str) -> ChannelClient | None:
        client = self._clients.pop(tenant_id, None)
        self._states.pop(tenant_id, None)
        self._generation[tenant_id] += 1
        watchdog = self._watchdogs.pop(tenant_id, None)
        if watchdog is not None and watchdog is not asyncio.current_task():
            watchdog.cancel()
        self._update_gauge()
        return client

    async def _stop_client(self, tenant_id: str, client: ChannelClient) -> None:
        try:
            await client.stop()
        except Exception as exc:
            logger.warning("channel_stop_failed tenant_id=%s error=%s", tenant_id, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- events --------------------------------------------------------

    async def handle_event(self, tenant_id: str, generation: int, event: SessionEvent) -> None:
        """Apply an event reported by the client of `generation`.

        Events from a superseded client are dropped.
        """

        tenant_id_ctx.set(tenant_id)
        if generation != self._generation[tenant_id] or tenant_id not in self._clients:
            logger.info("stale_channel_event tenant_id=%s kind=%s", tenant_id, event.kind)
            return

        if isinstance(event, MessageReceived):
            self.audit.record_inbound(tenant_id, event.sender, event.body, event.protocol_message_id)
            return

        session = await self.apply_session_event(tenant_id, event)
        if session is None:
            return

        if isinstance(event, Ready):
            watchdog = self._watchdogs.pop(tenant_id, None)
            if watchdog is not None and watchdog is not asyncio.current_task():
                watchdog.cancel()
        elif isinstance(event, TEARDOWN_EVENTS):
            client = self._forget_client(tenant_id)
            if client is not None:
                self._spawn(self._stop_client(tenant_id, client))
                if self.lease is not None:
                    self.lease.release(tenant_id)

    async def apply_session_event(self, tenant_id: str, event: SessionEvent) -> SessionSnapshot | None:
        """Persist the transition, audit it and stage the session-updated event.

        Transitions the state machine rejects are logged and dropped (None).
        """

        async with self._write_locks[tenant_id]:
            current = self.store.find_session(tenant_id) or SessionSnapshot(tenant_id=tenant_id)
            try:
                updated = apply_event(current, event, self.clock())
            except InvalidTransition as exc:
                logger.warning("ignored_session_event tenant_id=%s error=%s", tenant_id, exc)
                return None
            session = self.store.save(updated)
            if tenant_id in self._clients:
                self._states[tenant_id] = session.connection_state

        event_type = event_type_for(event)
        detail = {"from": current.connection_state.value, "to": session.connection_state.value}
        reason = getattr(event, "reason", None)
        if reason:
            detail["reason"] = reason
        if isinstance(event, PairingCodeIssued):
            # The code itself is a credential; only its presence is logged.
            detail["has_code"] = True
        self.audit.record_event(tenant_id, event_type, detail, severity=event.severity, session=session)
        session_events_total.labels(service=self.service_name, event_type=event_type).inc()
        log = logger.warning if event.severity != "info" else logger.info
        log("session_event tenant_id=%s type=%s state=%s", tenant_id, event_type, session.connection_state.value)
        return session

    def _start_watchdog(self, tenant_id: str, generation: int) -> None:
        async def watch() -> None:
            await self.sleep(self.pairing_timeout_seconds)
            if self._generation[tenant_id] != generation:
                return
            if self._states.get(tenant_id) == ConnectionState.READY:
                return
            logger.warning("pairing_timeout tenant_id=%s timeout_s=%s", tenant_id, self.pairing_timeout_seconds)
            await self.handle_event(tenant_id, generation, PairingTimedOut())

        task = asyncio.create_task(watch())
        self._watchdogs[tenant_id] = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- delivery ------------------------------------------------------

    async def send(self, tenant_id: str, recipient: str, body: str) -> DeliveryResult:
        """Send one text through the tenant's ready client.

        Raises `ChannelNotReady` when the tenant has no ready client,
        `InvalidRecipient` for unmappable addresses and
        `TransientDeliveryError` when the send exceeds its timeout.
        """

        async with self._send_locks[tenant_id]:
            if not self.is_ready(tenant_id):
                raise ChannelNotReady(f"tenant {tenant_id} has no ready channel")
            chat_id = to_chat_id(recipient)
            client = self._clients[tenant_id]
            started = perf_counter()
            with tracer.start_as_current_span("channel.send") as span:
                span.set_attribute("tenant.id", tenant_id)
                try:
                    protocol_message_id = await asyncio.wait_for(
                        client.send_text(chat_id, body), timeout=self.send_timeout_seconds
                    )
                except asyncio.TimeoutError as exc:
                    raise TransientDeliveryError(f"send timed out after {self.send_timeout_seconds}s") from exc
            send_latency_seconds.labels(service=self.service_name).observe(max(0.0, perf_counter() - started))
            return DeliveryResult(protocol_message_id=protocol_message_id, chat_id=chat_id)

    # -- maintenance ---------------------------------------------------

    async def reap_idle(self, inactivity_timeout_seconds: float) -> list[str]:
        """Disconnect ready tenants with no activity for longer than the timeout."""

        now = self.clock()
        reaped = []
        for tenant_id in self.active_tenants():
            session = self.store.find_session(tenant_id)
            if session is None or session.connection_state not in LIVE_STATES:
                continue
            last_seen = session.last_activity_at or session.last_connected_at
            if last_seen is not None and (now - last_seen).total_seconds() > inactivity_timeout_seconds:
                await self.disconnect(tenant_id, reason="inactivity")
                reaped.append(tenant_id)
        return reaped

    async def renew_leases(self) -> list[str]:
        """Renew every held lease; tenants whose lease was lost are torn down."""

        if self.lease is None:
            return []
        lost = []
        for tenant_id in self.active_tenants():
            if not self.lease.renew(tenant_id):
                lost.append(tenant_id)
                await self.disconnect(tenant_id, reason="lease_lost")
        return lost
