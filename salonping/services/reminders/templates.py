"""Reminder message templates."""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from salonping.common.logging import logger


DEFAULT_TEMPLATE = (
    "Hi {clientName}, this is a reminder of your {service} appointment at {salonName} on {date} at {time}."
)

PLACEHOLDERS = ("clientName", "service", "time", "date", "salonName")


def render_template(template: str, values: dict[str, str]) -> str:
    """Replace every `{name}` for known placeholders; others stay as written."""

    rendered = template
    for name in PLACEHOLDERS:
        if name in values:
            rendered = rendered.replace("{" + name + "}", values[name])
    return rendered


def tenant_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone name=%s falling back to UTC", name)
        return ZoneInfo("UTC")


def appointment_values(
    client_name: str, service: str, starts_at: datetime, salon_name: str, timezone_name: str | None
) -> dict[str, str]:
    local = starts_at.astimezone(tenant_zone(timezone_name))
    return {
        "clientName": client_name,
        "service": service,
        "time": local.strftime("%H:%M"),
        "date": local.strftime("%Y-%m-%d"),
        "salonName": salon_name,
    }
