"""Startup-time helpers for safe config logging."""

from salonping.common.config import CommonSettings
from salonping.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def _redact(name: str, value):
    """Hide values of secret-like settings; DSNs may embed credentials."""

    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>" if value else "<unset>"
    return value


def log_startup_config(config: CommonSettings) -> None:
    """Log the effective configuration for quick troubleshooting."""

    snapshot = {name: _redact(name, value) for name, value in config.model_dump().items()}
    logger.info("startup_config=%s", snapshot)
