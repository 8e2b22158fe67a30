"""Application configuration using Pydantic settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/library_sync"

    # Catalog API
    catalog_base_url: str = "https://api.spotify.com/v1"
    catalog_access_token: str | None = None
    catalog_timeout_seconds: float = 30.0
    catalog_max_retries: int = 3

    # Rate governor (sliding window + escalating backoff)
    rate_limit_max_requests: int = 30
    rate_limit_window_seconds: float = 60.0
    backoff_step_seconds: float = 60.0
    backoff_max_seconds: float = 180.0
    rate_limit_default_reset_hours: int = 24
    rate_limit_state_key: str = "catalog_api"

    # Batch sizes per entity type
    tracks_batch_size: int = 50
    artists_batch_size: int = 50
    albums_batch_size: int = 20
    playlists_batch_size: int = 50
    playlist_items_page_size: int = 100
    play_history_limit: int = 50

    # Orchestration
    max_batch_retries: int = 3
    stale_run_minutes: int = 30
    last_error_max_length: int = 500

    # Background worker
    enable_initial_full_sync: bool = True
    enable_incremental_sync: bool = True
    incremental_sync_interval_minutes: int = 30
    enable_playback_polling: bool = True
    playback_poll_interval_minutes: int = 5

    # Alerts
    alert_failure_threshold: int = 3
    alert_webhook_url: str | None = None

    # API settings
    api_v1_prefix: str = "/api/v1"
    cors_origins: list[str] = ["*"]  # Restrict in production
    rate_limit_per_minute: int = 60

    # Environment
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
