"""Central environment-driven settings shared by the rental services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "rental"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./carrental.db"
    kafka_bootstrap_servers: str = "kafka:9092"
    api_key: str = "local-dev-key"
    otel_exporter_otlp_endpoint: str = ""
    high_rental_rate_threshold: float = 40.0
    outbox_poll_interval_seconds: float = 0.5
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
