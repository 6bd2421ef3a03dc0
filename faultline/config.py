"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
import socket
import uuid
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    log_level: str = "INFO"

    # Relational registry (issues, alerts, channels, locks)
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Analytics event store
    analytics_database_url: str = ""  # Falls back to database_url when empty
    analytics_async_insert_wait: bool = True
    connect_timeout_seconds: int = 30

    # Encryption (webhook secrets at rest)
    encryption_key: str = ""

    # Alert worker
    alert_worker_interval_seconds: int = 60
    alert_lock_seconds: int = 300
    alert_worker_instance_id: str = ""

    # Outbound webhooks
    webhook_timeout_seconds: float = 10.0

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def resolved_analytics_database_url(self) -> str:
        return self.analytics_database_url or self.database_url

    @property
    def resolved_instance_id(self) -> str:
        """Identity stamped on alert locks. Generated from the hostname when not configured."""
        if self.alert_worker_instance_id:
            return self.alert_worker_instance_id
        return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
