"""
Shared configuration management for the Access Policy Decision Point.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PDP_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    log_json: bool = Field(default=True)

    # Persistence
    persistence_backend: Literal["memory", "postgres"] = Field(default="memory")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")
    postgres_pool_min_size: int = Field(default=2, ge=1)
    postgres_pool_max_size: int = Field(default=10, ge=1)

    # Decision path
    store_timeout_seconds: float = Field(default=2.0, gt=0)

    # Audit worker
    audit_queue_size: int = Field(default=10000, ge=1)
    audit_write_timeout_seconds: float = Field(default=2.0, gt=0)
    audit_drain_timeout_seconds: float = Field(default=5.0, ge=0)
    decision_log_retention_days: int = Field(default=30, ge=1)

    # Administration
    statistics_top_n: int = Field(default=10, ge=1)
    initialize_core_policies: bool = Field(default=False)
    system_actor_id: str = Field(default="system")


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
