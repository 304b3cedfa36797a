"""Application configuration management using pydantic-settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="rewards-client", description="Application name")
    environment: Literal["development", "testing", "staging", "production"] = Field(
        default="development", description="Runtime environment"
    )
    debug: bool = Field(default=False, description="Debug mode flag")

    # Backend selection
    backend_environment: Literal["local", "local_network", "production"] = Field(
        default="production", description="Which backend deployment to talk to"
    )
    local_backend_url: str = Field(
        default="http://localhost:3001", description="Backend on this machine"
    )
    local_network_backend_url: str = Field(
        default="http://192.168.1.100:3001",
        description="Backend on the local network (device testing)",
    )
    production_backend_url: str = Field(
        default="https://restaurant-stripe-server-1.onrender.com",
        description="Deployed backend",
    )

    # HTTP
    request_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for a single backend request"
    )
    redeem_max_attempts: int = Field(
        default=3, ge=1, description="Physical attempts per redemption intent"
    )
    redeem_retry_delay_seconds: float = Field(
        default=1.0, ge=0, description="Base delay between redemption retries"
    )

    # Push feed
    redeemed_rewards_collection: str = Field(
        default="redeemedRewards", description="Collection holding redemption records"
    )
    users_collection: str = Field(
        default="users", description="Collection holding user profiles"
    )
    points_field: str = Field(
        default="points", description="User document field with the points balance"
    )
    active_redemption_limit: int = Field(
        default=10, ge=1, description="Max active redemptions fetched by the feed"
    )
    feed_backoff_initial_seconds: float = Field(
        default=1.0, gt=0, description="First resubscription delay"
    )
    feed_backoff_max_seconds: float = Field(
        default=60.0, gt=0, description="Resubscription delay cap"
    )
    feed_max_reconnect_attempts: int = Field(
        default=8, ge=1, description="Consecutive failures before degrading"
    )

    # Countdown
    countdown_tick_seconds: float = Field(
        default=1.0, gt=0, description="Countdown refresh interval"
    )
    urgency_warning_seconds: int = Field(default=300, description="Warning below this")
    urgency_urgent_seconds: int = Field(default=120, description="Urgent below this")
    urgency_critical_seconds: int = Field(default=60, description="Critical below this")

    # Tracker
    pending_grace_seconds: float = Field(
        default=10.0,
        ge=0,
        description="How long a just-redeemed record may be missing from the feed",
    )

    # Session
    refund_recheck_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Delay before re-requesting an unconfirmed refund for a redemption the server still lists",
    )

    # Idempotency persistence
    pending_redemptions_path: Path | None = Field(
        default=None,
        description="File for in-flight redemption intents; None keeps them in memory only",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log output format"
    )

    @computed_field
    @property
    def backend_url(self) -> str:
        """Get backend base URL for the selected deployment."""
        if self.backend_environment == "local":
            return self.local_backend_url
        if self.backend_environment == "local_network":
            return self.local_network_backend_url
        return self.production_backend_url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
