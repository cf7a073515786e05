"""Configuration management for the shipment notification service."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./shipnotify.db"
    sql_echo: bool = False

    # Queue policy
    event_batch_size: int = 25
    notification_batch_size: int = 25
    visibility_timeout_ms: int = 60_000
    max_attempts: int = 5
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 900.0
    retry_jitter: float = 0.1

    # Scheduling
    dispatch_interval_minutes: int = 2
    scheduler_enabled: bool = True
    dispatch_token: str = ""

    # Rules
    rules_config_path: str = "config/notifications.yaml"

    # Channels
    channel_adapter_mode: str = "logging"  # logging | live
    slack_bot_token: str = ""
    webhook_signing_secret: str = ""
    webhook_timeout_seconds: float = 10.0
    knock_api_key: str = ""

    # Inbound carrier webhooks (signature verification)
    carrier_webhook_secret: str = ""

    # App
    log_level: str = "INFO"
    env: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
