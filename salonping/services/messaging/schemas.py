"""API request/response schemas for messaging endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TenantRequest(BaseModel):
    """Body of `/connect`, `/disconnect` and `/process-queue`."""

    tenant: str | None = None


class SendRequest(BaseModel):
    """Message accepted by `POST /send`."""

    tenant: str | None = None
    recipient: str = Field(min_length=1)
    body: str = Field(min_length=1, max_length=4096)
    appointment_ref: str | None = None
    priority: int = Field(default=2, ge=0, le=9)
    scheduled_for: datetime | None = None
    message_type: str = "text"


class SendResponse(BaseModel):
    message_id: str
    status: str


class SessionStatusResponse(BaseModel):
    """Session projection plus this process's live view of the tenant."""

    tenant_id: str
    connection_state: str
    is_connected: bool
    channel_identity: str | None = None
    last_connected_at: datetime | None = None
    last_activity_at: datetime | None = None
    last_disconnect_reason: str | None = None
    messages_sent_today: int = 0
    rate_limit_reset_at: datetime | None = None
    client_live: bool = False
    rate_limit_remaining: int
    queue: dict[str, int]


class QrResponse(BaseModel):
    qr_code: str | None = None
    connection_state: str


class ProcessQueueResponse(BaseModel):
    processed: int
    failed: int
    retried: int = 0
    deferred: int = 0


class QueuedMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    recipient_address: str
    body: str
    message_type: str
    priority: int
    scheduled_for: datetime
    attempts: int
    max_attempts: int
    status: str
    appointment_ref: str | None = None
    reminder_kind: str | None = None
    protocol_message_id: str | None = None
    last_error: str | None = None
    sent_at: datetime | None = None


class QueueListResponse(BaseModel):
    messages: list[QueuedMessageResponse]
    counts: dict[str, int]


class ReminderSweepResponse(BaseModel):
    enqueued: dict[str, int]


class HealthResponse(BaseModel):
    status: str
    active_tenants: int
