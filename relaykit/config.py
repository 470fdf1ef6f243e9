"""
Application configuration management.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis (durable store for records, schedules and delivery logs)
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 20

    # Admin API
    admin_api_key: Optional[str] = None

    # Webhook delivery
    webhook_timeout_seconds: float = 10.0
    webhook_user_agent: str = "SmartBatch-Webhook/1.0"

    # Retry sweep
    retry_sweep_interval_seconds: int = 15
    retry_sweep_concurrency: int = 20
    task_poll_interval_seconds: float = 1.0

    # Retention
    error_retention_days: int = 30
    audit_retention_days: int = 365
    audit_export_limit: int = 10000

    # Application
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
