"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./coworking.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="30/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    directory_cache_ttl: int = Field(default=60, description="TTL (s) for the cached member directory")
    log_dir: str = Field(default="logs", description="Directory receiving the per-service audit logs")

    local_timezone: str = Field(
        default="America/Sao_Paulo",
        description="IANA timezone used for calendar month and day boundaries.",
    )
    default_quota_hours: float = Field(default=10.0, gt=0, description="Monthly quota when a profile has none set")
    booking_gap_minutes: int = Field(default=30, ge=0, description="Minimum idle minutes between bookings of a room")
    cancellation_lead_hours: int = Field(default=24, ge=0, description="Advance notice required for self-cancellation")
    bookable_rooms: List[str] = Field(
        default_factory=lambda: ["Sala de Reunião 1", "Sala de Reunião 2", "Auditório"],
        description="Room keys offered by the booking form",
    )

    rabbitmq_host: str = Field(default="", description="RabbitMQ host for change events; empty disables forwarding")
    bookings_queue: str = Field(default="bookings", description="Durable queue receiving forwarded change events")
    stream_keepalive_seconds: float = Field(default=15.0, gt=0, description="Idle interval before an SSE keepalive")

    users_service_port: int = 8001
    bookings_service_port: int = 8002
    community_service_port: int = 8003


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
