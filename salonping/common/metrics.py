"""Prometheus metric definitions for the messaging engine."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


messages_enqueued_total = Counter(
    "messages_enqueued_total",
    "Messages written to the outbound queue",
    ["service", "source"],
)
messages_sent_total = Counter("messages_sent_total", "Messages delivered to the channel", ["service"])
messages_failed_total = Counter(
    "messages_failed_total",
    "Messages terminally failed",
    ["service", "reason"],
)
message_retries_total = Counter("message_retries_total", "Retryable send failures rescheduled", ["service"])
rate_limit_deferrals_total = Counter(
    "rate_limit_deferrals_total",
    "Claimed messages released because the tenant window was exhausted",
    ["service"],
)
send_latency_seconds = Histogram(
    "send_latency_seconds",
    "Channel send latency seconds (excluding pacing delays)",
    ["service"],
)
session_events_total = Counter(
    "session_events_total",
    "Session lifecycle events applied",
    ["service", "event_type"],
)
reminders_enqueued_total = Counter(
    "reminders_enqueued_total",
    "Appointment reminders enqueued by the scheduler",
    ["service", "reminder_kind"],
)
queue_depth = Gauge("queue_depth", "Queued messages by status", ["service", "status"])
live_channel_clients = Gauge("live_channel_clients", "Channel clients held by this process", ["service"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
