"""Central environment-driven settings for the messaging engine.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`); tests build their own `CommonSettings`.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "messaging"
    worker_id: str = "messaging-1"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    auto_create_schema: bool = False
    cors_origins: list[str] = ["http://localhost:5173"]

    kafka_bootstrap_servers: str = "kafka:9092"
    outbox_publisher_enabled: bool = True
    redis_url: str = "redis://redis:6379/0"
    tenant_lease_enabled: bool = False
    tenant_lease_ttl_seconds: int = 60
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    channel_bridge_url: str = "http://waha:3000"
    channel_bridge_api_key: str = ""
    channel_poll_interval_seconds: float = 2.0
    pairing_timeout_seconds: float = 120.0
    send_timeout_seconds: float = 30.0
    inactivity_timeout_seconds: int = 6 * 3600
    resume_sessions_on_start: bool = True

    rate_limit_per_minute: int = 10
    rate_limit_window_seconds: float = 60.0
    queue_max_attempts: int = 3
    retry_base_seconds: float = 30.0
    retry_max_delay_seconds: float = 1800.0
    claim_batch_size: int = 5
    processing_timeout_seconds: int = 300

    pacing_min_seconds: float = 2.0
    pacing_per_char_seconds: float = 0.03
    pacing_max_seconds: float = 8.0
    pacing_jitter_seconds: float = 1.0
    pacing_gap_seconds: float = 1.0

    background_workers_enabled: bool = True
    delivery_sweep_interval_seconds: float = 30.0
    reminder_sweep_interval_seconds: float = 120.0
    maintenance_interval_seconds: float = 30.0
    reminder_window_minutes: int = 30
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
