"""Configuration loading for the group-buy coordination service.

This module provides centralized configuration management:
- Load settings from environment variables and .env files
- Validate configuration using pydantic
- Provide typed access to all settings
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment.

    Uses pydantic-settings for environment variable handling with
    .env file support via python-dotenv.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Store configuration
    store_backend: Literal["sqlite", "postgresql"] = Field(
        default="sqlite",
        description="Group order store backend type",
    )
    store_sqlite_path: str = Field(
        default="./data/groupbuy.db",
        description="SQLite database file path",
    )
    database_url: str = Field(
        default="",
        description="PostgreSQL connection URL",
    )

    # Commerce services
    catalog_api_url: str = Field(
        default="http://localhost:8001",
        description="Catalog service URL (prices and stock)",
    )
    voucher_api_url: str = Field(
        default="http://localhost:8002",
        description="Voucher service URL",
    )
    address_api_url: str = Field(
        default="http://localhost:8003",
        description="Address book service URL",
    )
    payment_gateway_url: str = Field(
        default="http://localhost:8004",
        description="Payment gateway URL",
    )
    payment_return_url: str = Field(
        default="",
        description="URL hosted payment pages send the buyer back to",
    )
    commerce_api_key: str = Field(
        default="",
        description="API key sent to the commerce and payment services",
    )
    commerce_timeout_seconds: float = Field(
        default=10.0,
        description="Per-request timeout for commerce service calls",
    )

    # Notification configuration
    notification_backend: Literal["stdout", "http"] = Field(
        default="stdout",
        description="Notification backend type",
    )
    realtime_relay_url: str = Field(
        default="http://localhost:8010",
        description="Realtime relay URL for the http notification backend",
    )
    realtime_relay_api_key: str = Field(
        default="",
        description="API key for the realtime relay",
    )

    # Group lifecycle
    sweep_interval_seconds: int = Field(
        default=60,
        description="Interval between expiry sweeps in seconds",
    )
    payment_window_minutes: int = Field(
        default=1440,
        description="Time members have to pay once a group locks",
    )
    unlock_extension_minutes: int = Field(
        default=60,
        description="Deadline given to a group that is unlocked",
    )
    voucher_cache_ttl_minutes: int = Field(
        default=30,
        description="How long a host-applied group voucher stays cached",
    )
    cod_member_limit: int = Field(
        default=5,
        description="Largest group allowed to pay cash on delivery",
    )
    invite_base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL for shareable invite links",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log format",
    )

    # Run mode
    run_mode: Literal["daemon", "cli", "webhook"] = Field(
        default="daemon",
        description="Run mode",
    )

    # Webhook configuration
    webhook_host: str = Field(
        default="0.0.0.0",
        description="Host to listen on for webhook server",
    )
    webhook_port: int = Field(
        default=8080,
        description="Port to listen on for webhook server",
    )
    webhook_api_key: str = Field(
        default="",
        description="API key for webhook authentication (required for production)",
    )
    webhook_require_auth: bool = Field(
        default=False,
        description="Require API key authentication for webhook endpoints",
    )

    # Development
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging",
    )

    @field_validator(
        "sweep_interval_seconds",
        "payment_window_minutes",
        "unlock_extension_minutes",
        "voucher_cache_ttl_minutes",
    )
    @classmethod
    def validate_positive_interval(cls, v: int) -> int:
        """Ensure intervals are positive."""
        if v <= 0:
            raise ValueError("interval must be positive")
        return v

    @field_validator("cod_member_limit")
    @classmethod
    def validate_cod_member_limit(cls, v: int) -> int:
        """Ensure the COD limit admits at least a minimal group."""
        if v < 2:
            raise ValueError("cod_member_limit must be at least 2")
        return v

    @field_validator("commerce_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("commerce_timeout_seconds must be positive")
        return v

    @field_validator("webhook_port")
    @classmethod
    def validate_webhook_port(cls, v: int) -> int:
        """Ensure webhook port is in valid range."""
        if v <= 0 or v > 65535:
            raise ValueError("webhook_port must be between 1 and 65535")
        return v


def load_settings(env_file: str | None = None) -> Settings:
    """Load application settings from environment.

    Args:
        env_file: Optional path to .env file. If not provided,
                 uses the default .env in the current directory.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If settings validation fails.
    """
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


__all__ = ["Settings", "load_settings"]
