"""
Shared configuration management for the Moderation Relay.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    data_dir: str = Field(default="database")
    logs_dir: str = Field(default="logs")

    # Operator credential for log clearing and tenant provisioning
    admin_key: Optional[str] = Field(default=None)

    # Notification sink
    log_webhook_url: Optional[str] = Field(default=None)
    notification_timeout_seconds: float = Field(default=5.0)
    notification_failure_threshold: int = Field(default=3)
    notification_recovery_seconds: float = Field(default=60.0)

    # Rate limiting
    rate_limit_window_seconds: float = Field(default=60.0)
    rate_limit_max_requests: int = Field(default=100)
    rate_limit_block_seconds: float = Field(default=900.0)
    rate_limit_sweep_interval_seconds: float = Field(default=300.0)

    # Command log
    command_log_max_entries: int = Field(default=1000)
    logs_default_limit: int = Field(default=50)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
