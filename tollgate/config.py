"""
Application Configuration
=========================
Centralized configuration management using Pydantic Settings.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tollgate.core.router import DEFAULT_LADDER
from tollgate.schemas.telemetry import AlertPolicy, RoutingPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TOLLGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"

    # Proxy listener
    proxy_host: str = "127.0.0.1"
    proxy_port: int = Field(default=4243, ge=1, le=65535)

    # Dashboard API
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = Field(default=4244, ge=1, le=65535)

    # Upstream
    upstream_url: str = "https://api.anthropic.com"
    upstream_connect_timeout: float = Field(default=10.0, gt=0)
    upstream_read_timeout: float = Field(default=600.0, gt=0)

    # Routing
    routing_enabled: bool = False
    routing_threshold: int = Field(default=80, ge=1, le=100)
    routing_known_limit: int = Field(default=400_000, gt=0)
    routing_ladder: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_LADDER))

    # Request quota ceiling, used for dashboard percentages only
    known_request_limit: int = Field(default=2_000, gt=0)

    # Alerts
    alert_warning_percent: int = Field(default=80, ge=1, le=100)
    alert_critical_percent: int = Field(default=95, ge=1, le=100)

    # Database
    database_url: str = "sqlite+aiosqlite:///tollgate.db"
    retention_days: int = Field(default=30, ge=1)

    # Scheduler
    scheduler_enabled: bool = True
    purge_hour: int = Field(default=3, ge=0, le=23)

    # Notifications
    notify_enabled: bool = False
    notify_webhook_url: str | None = None

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    # Metrics
    metrics_enabled: bool = True

    # Pricing config path
    pricing_config_path: str = "config/pricing.yaml"

    @model_validator(mode="after")
    def check_alert_tiers(self) -> "Settings":
        if self.alert_critical_percent < self.alert_warning_percent:
            raise ValueError("alert_critical_percent must be >= alert_warning_percent")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def routing_policy(self) -> RoutingPolicy:
        """Routing policy handed to the router on every request."""
        return RoutingPolicy(
            enabled=self.routing_enabled,
            threshold=self.routing_threshold,
            known_limit=self.routing_known_limit,
            ladder=self.routing_ladder,
        )

    @property
    def alert_policy(self) -> AlertPolicy:
        return AlertPolicy(
            warning_percent=self.alert_warning_percent,
            critical_percent=self.alert_critical_percent,
            known_limit=self.routing_known_limit,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
