"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE
    # ===================
    supabase_url: str = Field(
        ...,
        description="Supabase project URL"
    )
    supabase_key: str = Field(
        ...,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key (for sync writes and credential decryption)"
    )

    # ===================
    # FEED
    # ===================
    feed_provider: str = Field(
        default="traveltek",
        description="Provider key stored on every canonical row"
    )
    feed_source: str = Field(
        default="local",
        pattern="^(local|http)$",
        description="Where feed files are read from"
    )
    feed_local_dir: str = Field(
        default="./data/traveltek",
        description="Root directory scanned for *.json feed files"
    )
    feed_http_base_url: Optional[str] = Field(
        None,
        description="Base URL serving manifest.json and feed files"
    )
    feed_http_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Per-request timeout for the HTTP feed source"
    )

    # ===================
    # SYNC
    # ===================
    sync_concurrency: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Files processed in parallel (bounded by DB connections)"
    )
    sync_max_file_bytes: int = Field(
        default=500_000,
        ge=1_000,
        le=10_000_000,
        description="Feed files larger than this are skipped as oversized"
    )
    sync_history_error_limit: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Errors shown per run in the history view"
    )
    sync_alert_consecutive_errors: int = Field(
        default=25,
        ge=1,
        le=10_000,
        description="Consecutive record failures that trigger an operator alert"
    )
    sync_stale_run_minutes: int = Field(
        default=360,
        ge=5,
        le=10_080,
        description="A running run with no progress for this long is treated as abandoned"
    )
    raw_retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days raw feed JSON is kept in cruise_sync_raw"
    )
    reference_cache_max_entries: int = Field(
        default=50_000,
        ge=0,
        le=1_000_000,
        description="Resolved reference rows kept in memory (0 disables the cache)"
    )

    # ===================
    # SCHEDULED SYNC
    # ===================
    sync_schedule_enabled: bool = Field(
        default=False,
        description="Run a full sync once a day from the API process"
    )
    sync_schedule_hour_utc: int = Field(
        default=7,
        ge=0,
        le=23,
        description="Hour (UTC) the daily sync starts"
    )
    sync_schedule_minute: int = Field(
        default=0,
        ge=0,
        le=59,
        description="Minute the daily sync starts"
    )
    sync_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per scheduled sync when the feed or database is unreachable"
    )
    sync_retry_base_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="First retry delay; doubles on every further attempt"
    )

    # ===================
    # SEARCH / REPORTS
    # ===================
    search_default_page_size: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Default sailings per page"
    )
    search_max_page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Hard cap on sailings per page"
    )
    stubs_report_limit: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Oldest stubs listed in the stubs report"
    )

    # ===================
    # TELEGRAM
    # ===================
    telegram_bot_token: Optional[str] = Field(
        None,
        description="Telegram bot token from @BotFather"
    )
    telegram_chat_id: Optional[str] = Field(
        None,
        description="Telegram chat ID for operator alerts"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def telegram_configured(self) -> bool:
        """Check if Telegram is properly configured."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If required env vars are missing or invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
