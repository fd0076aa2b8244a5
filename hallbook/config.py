"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./hallbook.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    service_api_key: str = Field(default="service-key", description="API key for service-to-service calls")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="30/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    hall_status_cache_ttl: int = Field(default=60, description="TTL (s) for cached private hall status results")

    lifecycle_enabled: bool = Field(default=True, description="Run the booking lifecycle manager in the cabins service")
    lifecycle_interval_seconds: float = Field(default=300.0, description="Seconds between periodic lifecycle checks")
    lifecycle_change_delay_seconds: float = Field(
        default=1.0,
        description="Delay before a lifecycle check triggered by a booking change",
    )
    pending_booking_timeout_minutes: int = Field(
        default=30,
        description="Unpaid pending seat bookings older than this are cancelled by the lifecycle run",
    )

    public_domain: str = Field(default="http://localhost:5173", description="Public front-end origin used in QR links")
    media_root: str = Field(default="./media", description="Directory where generated QR codes are written")
    media_url: str = Field(default="/media", description="Public URL prefix for files under media_root")

    notifications_enabled: bool = Field(default=False, description="Publish booking events to RabbitMQ")
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ broker host")
    notifications_queue: str = Field(default="notifications", description="Durable queue receiving booking events")
    change_relay_enabled: bool = Field(default=False, description="Share committed changes between services via RabbitMQ")
    change_exchange: str = Field(default="hallbook.changes", description="Fanout exchange carrying change events")
    change_relay_retry_seconds: float = Field(default=5.0, description="Wait before reconnecting a dropped relay consumer")

    platform_fee_enabled: bool = Field(default=True, description="Deduct a platform fee from merchant settlements")
    platform_fee_type: str = Field(default="percent", description="'percent' or 'flat'")
    platform_fee_value: float = Field(default=2.0, description="Fee percentage or flat amount")

    cabins_service_port: int = 8001
    bookings_service_port: int = 8002
    payments_service_port: int = 8003
    content_service_port: int = 8004


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
