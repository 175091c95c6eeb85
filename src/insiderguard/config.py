"""
Application settings using Pydantic.

Provides environment-based configuration loading with INSIDERGUARD_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = "postgresql+psycopg://localhost/insiderguard"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Debug
    debug: bool = False

    # Environment
    environment: str = "development"

    # API
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = []

    # Mail relay
    mail_base_url: str = "http://localhost:8025/api"
    mail_api_token: str | None = None
    mail_from: str = "insiderguard@example.com"
    http_timeout: int = 30

    # Delivery retry (email_alert / immediate_alert)
    delivery_max_retries: int = 3
    delivery_backoff_multiplier: float = 1.0
    delivery_backoff_max: float = 30.0

    # Scheduling
    worker_poll_interval: float = 1.0
    worker_batch_size: int = 100
    execution_lease_seconds: int = 300
    dispatch_concurrency: int = 10

    # Evaluation
    business_hours_start: int = 8
    business_hours_end: int = 18

    # Stats
    recent_executions_days: int = 30

    # Notifications
    management_recipients: list[str] = []
    system_alert_roles: list[str] = ["admin", "security_admin"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "INSIDERGUARD_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
