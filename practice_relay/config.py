"""
Configuration settings for the practice-relay session layer.

Uses Pydantic Settings for environment variable management with .env file support.
Provider credentials are not settings: they live in the configuration store
(document ``settings/provider``) so they can be rotated without a restart.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Document Store
    # ========================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./practice_relay.db",
        description="SQLAlchemy async URL of the document store",
    )

    # ========================================
    # Conversation Provider
    # ========================================
    provider_api_url: str = Field(
        default="https://tavusapi.com/v2",
        description="Base URL of the conversation provider API",
    )
    callback_origin: str = Field(
        default="http://localhost:5173",
        description="Absolute origin used to build provider webhook callback URLs",
    )
    provider_create_timeout_seconds: float = Field(
        default=30.0,
        description="Deadline for creating a conversation",
    )
    provider_end_timeout_seconds: float = Field(
        default=15.0,
        description="Deadline for ending a conversation",
    )
    provider_health_timeout_seconds: float = Field(
        default=5.0,
        description="Deadline for the provider health probe",
    )

    # ========================================
    # Retry Policy
    # ========================================
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per online operation before giving up",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        description="Backoff delay before the second attempt",
    )
    retry_max_delay_seconds: float = Field(
        default=10.0,
        description="Upper bound on any single backoff delay",
    )
    retry_jitter_seconds: float = Field(
        default=1.0,
        description="Random jitter added to each backoff delay",
    )

    # ========================================
    # Sessions
    # ========================================
    session_default_ttl_seconds: int = Field(
        default=180,
        ge=1,
        le=3600,
        description="TTL used when a caller does not pass one",
    )

    # ========================================
    # Offline Queue
    # ========================================
    queue_storage_dir: Path = Field(
        default=Path.home() / ".practice_relay",
        description="Directory holding the durable offline queue",
    )
    queue_max_size: int = Field(
        default=100,
        ge=1,
        description="Hard capacity; the oldest item is evicted beyond it",
    )
    queue_max_retry_count: int = Field(
        default=5,
        ge=1,
        description="Processing passes an item may fail before it is dropped",
    )
    queue_item_expiry_hours: int = Field(
        default=24,
        description="Age after which queued items are discarded",
    )
    queue_cleanup_interval_seconds: int = Field(
        default=3600,
        description="Interval of the expired-item sweep",
    )
    queue_process_interval_seconds: int = Field(
        default=300,
        description="Interval of the periodic processing pass",
    )

    # ========================================
    # Quota
    # ========================================
    daily_limit_free: int = Field(
        default=1,
        ge=0,
        description="Conversations per day for the free tier",
    )
    daily_limit_premium: int = Field(
        default=3,
        ge=0,
        description="Conversations per day for the premium tier",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    def get_daily_limits(self) -> dict[str, int]:
        """Daily conversation limits keyed by tier."""
        return {
            "free": self.daily_limit_free,
            "premium": self.daily_limit_premium,
        }

    def get_retry_config(self) -> dict[str, Any]:
        """Keyword arguments for ``RetryPolicy``."""
        return {
            "max_retries": self.retry_max_attempts,
            "base_delay": self.retry_base_delay_seconds,
            "max_delay": self.retry_max_delay_seconds,
            "jitter": self.retry_jitter_seconds,
        }

    def get_queue_config(self) -> dict[str, Any]:
        """Keyword arguments for ``OfflineOperationQueue``."""
        return {
            "max_queue_size": self.queue_max_size,
            "max_retry_count": self.queue_max_retry_count,
            "item_expiry_hours": self.queue_item_expiry_hours,
            "cleanup_interval": self.queue_cleanup_interval_seconds,
            "process_interval": self.queue_process_interval_seconds,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
