"""Domain error taxonomy for sessions and delivery.

Delivery errors carry `retryable`; the queue uses it to decide between a
backoff reschedule and an immediate terminal failure.
"""


class DeliveryError(Exception):
    """Base class for failures while handing a message to the channel."""

    retryable = True


class TransientDeliveryError(DeliveryError):
    """Network timeouts, bridge 5xx, upstream throttling."""

    retryable = True


class ChannelNotReady(TransientDeliveryError):
    """The tenant has no live, ready channel client in this process."""


class PermanentDeliveryError(DeliveryError):
    """Rejected by the channel in a way retrying cannot fix."""

    retryable = False


class InvalidRecipient(PermanentDeliveryError):
    """Recipient address cannot be mapped to a channel chat id."""


class SessionError(Exception):
    """Base class for session lifecycle failures."""


class SessionNotFound(LookupError):
    """No persisted session row exists for the tenant."""


class TenantOwnedElsewhere(SessionError):
    """Another worker process holds the tenant's channel lease."""


class InvalidTransition(ValueError):
    """A session event is not allowed from the current connection state."""
