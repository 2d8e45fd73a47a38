"""HTTP surface for tenant sessions, the outbound queue and reminder sweeps.

Every endpoint except `/health` and `/metrics` requires the `X-API-Key`
header. The tenant comes from `X-Tenant-ID` or the request's `tenant` field;
when both are given they must agree.
"""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from salonping.common.config import settings
from salonping.common.errors import InvalidRecipient, SessionError, TenantOwnedElsewhere
from salonping.common.logging import configure_logging, logger, tenant_id_ctx, trace_id_ctx
from salonping.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from salonping.common.startup import log_startup_config
from salonping.common.state_machine import SessionSnapshot
from salonping.common.tracing import instrument_app, setup_tracing
from salonping.services.messaging.channel import to_chat_id
from salonping.services.messaging.queue import MESSAGE_STATUSES
from salonping.services.messaging.runtime import MessagingRuntime, build_runtime
from salonping.services.messaging.schemas import (
    HealthResponse,
    ProcessQueueResponse,
    QrResponse,
    QueuedMessageResponse,
    QueueListResponse,
    ReminderSweepResponse,
    SendRequest,
    SendResponse,
    SessionStatusResponse,
    TenantRequest,
)


def resolve_tenant(header_tenant: str | None, field_tenant: str | None) -> str:
    """Pick the tenant from header or payload; reject missing or conflicting values."""

    header_tenant = (header_tenant or "").strip() or None
    field_tenant = (field_tenant or "").strip() or None
    if header_tenant and field_tenant and header_tenant != field_tenant:
        raise HTTPException(status_code=400, detail="tenant mismatch between header and request")
    tenant_id = header_tenant or field_tenant
    if not tenant_id:
        raise HTTPException(status_code=400, detail="tenant is required")
    tenant_id_ctx.set(tenant_id)
    return tenant_id


def status_projection(runtime: MessagingRuntime, session: SessionSnapshot) -> SessionStatusResponse:
    tenant_id = session.tenant_id
    return SessionStatusResponse(
        tenant_id=tenant_id,
        connection_state=session.connection_state.value,
        is_connected=session.is_connected,
        channel_identity=session.channel_identity,
        last_connected_at=session.last_connected_at,
        last_activity_at=session.last_activity_at,
        last_disconnect_reason=session.last_disconnect_reason,
        messages_sent_today=session.messages_sent_today,
        rate_limit_reset_at=session.rate_limit_reset_at,
        client_live=tenant_id in runtime.pool.active_tenants(),
        rate_limit_remaining=runtime.rate_limiter.remaining(tenant_id),
        queue=runtime.queue.status_counts(tenant_id),
    )


def create_app(runtime: MessagingRuntime) -> FastAPI:
    """Build the FastAPI app around an explicit runtime registry."""

    config = runtime.config

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Recover sessions and run background loops with the app lifecycle."""

        await runtime.start()
        yield
        await runtime.shutdown()

    app = FastAPI(title="SalonPing Messaging", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    instrument_app(app, config)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency; bind a trace id for log lines."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=config.service_name, route=route, method=method).observe(
                elapsed
            )
            http_requests_total.labels(
                service=config.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Reject requests that do not provide the configured API key."""

        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="invalid API key")

    protected = [Depends(enforce_api_key)]

    @app.get("/health", response_model=HealthResponse)
    def health():
        """Container health probe endpoint."""

        return HealthResponse(status="ok", active_tenants=len(runtime.pool.active_tenants()))

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/status", response_model=SessionStatusResponse, dependencies=protected)
    def get_status(tenant: str | None = Query(default=None), x_tenant_id: str | None = Header(default=None)):
        tenant_id = resolve_tenant(x_tenant_id, tenant)
        session = runtime.store.find_session(tenant_id) or SessionSnapshot(tenant_id=tenant_id)
        return status_projection(runtime, session)

    @app.get("/qr", response_model=QrResponse, dependencies=protected)
    def get_qr(tenant: str | None = Query(default=None), x_tenant_id: str | None = Header(default=None)):
        """Current pairing code; null unless the session is `connecting`."""

        tenant_id = resolve_tenant(x_tenant_id, tenant)
        session = runtime.store.find_session(tenant_id) or SessionSnapshot(tenant_id=tenant_id)
        return QrResponse(qr_code=session.pairing_code, connection_state=session.connection_state.value)

    @app.post("/connect", response_model=SessionStatusResponse, dependencies=protected)
    async def connect(req: TenantRequest, x_tenant_id: str | None = Header(default=None)):
        """Start pairing (or resumption) for the tenant; idempotent while live."""

        tenant_id = resolve_tenant(x_tenant_id, req.tenant)
        try:
            session = await runtime.pool.connect(tenant_id)
        except TenantOwnedElsewhere as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except SessionError as exc:
            logger.error("connect_failed tenant_id=%s error=%s", tenant_id, exc)
            raise HTTPException(status_code=502, detail="channel unavailable") from exc
        return status_projection(runtime, session)

    @app.post("/disconnect", response_model=SessionStatusResponse, dependencies=protected)
    async def disconnect(req: TenantRequest, x_tenant_id: str | None = Header(default=None)):
        tenant_id = resolve_tenant(x_tenant_id, req.tenant)
        session = await runtime.pool.disconnect(tenant_id, reason="user_request")
        return status_projection(runtime, session)

    @app.post("/send", response_model=SendResponse, dependencies=protected)
    def send(req: SendRequest, x_tenant_id: str | None = Header(default=None)):
        """Enqueue one outbound message; delivery happens in the next sweep."""

        tenant_id = resolve_tenant(x_tenant_id, req.tenant)
        try:
            to_chat_id(req.recipient)
        except InvalidRecipient as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        message_id = runtime.queue.enqueue(
            tenant_id,
            req.recipient,
            req.body,
            message_type=req.message_type,
            priority=req.priority,
            scheduled_for=req.scheduled_for,
            appointment_ref=req.appointment_ref,
        )
        return SendResponse(message_id=message_id, status="pending")

    @app.post("/process-queue", response_model=ProcessQueueResponse, dependencies=protected)
    async def process_queue(req: TenantRequest, x_tenant_id: str | None = Header(default=None)):
        """Run an immediate delivery sweep for one tenant."""

        tenant_id = resolve_tenant(x_tenant_id, req.tenant)
        result = await runtime.worker.sweep_tenant(tenant_id)
        return ProcessQueueResponse(**result.as_dict())

    @app.get("/queue", response_model=QueueListResponse, dependencies=protected)
    def get_queue(
        tenant: str | None = Query(default=None),
        status: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
        x_tenant_id: str | None = Header(default=None),
    ):
        tenant_id = resolve_tenant(x_tenant_id, tenant)
        if status is not None and status not in MESSAGE_STATUSES:
            raise HTTPException(status_code=400, detail=f"unknown status {status}")
        rows = runtime.queue.list_messages(tenant_id, status=status, limit=limit)
        return QueueListResponse(
            messages=[QueuedMessageResponse.model_validate(row) for row in rows],
            counts=runtime.queue.status_counts(tenant_id),
        )

    @app.get("/messages/{message_id}", response_model=QueuedMessageResponse, dependencies=protected)
    def get_message(
        message_id: str,
        tenant: str | None = Query(default=None),
        x_tenant_id: str | None = Header(default=None),
    ):
        tenant_id = resolve_tenant(x_tenant_id, tenant)
        row = runtime.queue.get_message(message_id, tenant_id=tenant_id)
        if row is None:
            raise HTTPException(status_code=404, detail="message not found")
        return QueuedMessageResponse.model_validate(row)

    @app.post("/reminders/sweep", response_model=ReminderSweepResponse, dependencies=protected)
    async def sweep_reminders():
        """Run the reminder scheduler now instead of waiting for its interval."""

        return ReminderSweepResponse(enqueued=await runtime.reminder_tick())

    return app


configure_logging()
setup_tracing(settings)
log_startup_config(settings)
app = create_app(build_runtime(settings))
