"""
Application configuration using Pydantic Settings.
Loads from environment variables and .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "FleetCore"
    app_env: str = "development"  # development, staging, production
    debug: bool = True
    log_level: str = "INFO"
    cors_origins: list[str] = [
        "http://localhost:3000",  # Dispatch console dev
        "http://localhost:5173",  # Driver PWA dev
    ]

    # Database
    database_url: str = "postgresql://localhost:5432/fleetcore"

    # JWT Authentication (tokens are minted by the identity service)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60 * 12  # one shift

    # Admin API
    admin_api_key: Optional[str] = None  # Set this for automated admin access

    # Background workers (heartbeat sweep, offline sync processing)
    enable_background_workers: bool = True

    # Session registry
    session_heartbeat_timeout_minutes: int = 30
    session_sweep_interval_seconds: int = 60
    session_start_max_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.05

    # Telemetry
    telemetry_max_batch_size: int = 500
    max_plausible_speed_mps: float = 55.0  # ~200 km/h

    # Timeline queries
    timeline_default_limit: int = 100
    timeline_max_limit: int = 1000

    # Offline sync
    sync_encryption_key: Optional[str] = None  # hex-encoded AES key (16/24/32 bytes)
    sync_max_retries: int = 5
    sync_process_interval_seconds: int = 30
    sync_worker_concurrency: int = 8


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
