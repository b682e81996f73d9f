"""Settings configuration for Homecare Medications."""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict
from dotenv import load_dotenv

# Load environment variables from .env file in the same directory as this file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage Configuration
    storage_backend: str = Field(
        default="memory",
        description="Store backend: 'memory' or 'postgres'"
    )

    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL with asyncpg (postgres backend only)"
    )

    # Connection Pool Configuration
    db_pool_min_size: int = Field(
        default=5,
        description="Minimum database connection pool size"
    )

    db_pool_max_size: int = Field(
        default=20,
        description="Maximum database connection pool size"
    )

    # Scheduling Configuration
    default_timezone: str = Field(
        default="UTC",
        description="Time zone used for patients without stored preferences"
    )

    schedule_window_days: int = Field(
        default=7,
        ge=1,
        le=30,
        description="Number of days of upcoming doses kept generated"
    )

    # Sweep Configuration
    missed_detection_batch_size: int = Field(
        default=500,
        ge=1,
        description="Maximum open doses inspected per missed-detection sweep"
    )

    missed_detection_lookback_hours: int = Field(
        default=24,
        description="How far back the missed-detection sweep looks for open doses"
    )

    missed_detection_interval_minutes: int = Field(
        default=15,
        description="Period of the missed-detection sweep"
    )

    daily_rollover_hour: int = Field(
        default=2,
        ge=0,
        le=23,
        description="UTC hour at which the daily rollover sweep runs"
    )

    archive_retention_days: int = Field(
        default=30,
        ge=1,
        description="Events older than this many days are moved to the archive"
    )

    enable_background_sweeps: bool = Field(
        default=False,
        description="Run the periodic sweeps inside the application process"
    )

    # Transaction Configuration
    transaction_max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries for transient store errors inside one atomic unit"
    )

    transaction_retry_backoff_seconds: float = Field(
        default=0.2,
        ge=0.0,
        description="Base delay of the exponential retry backoff"
    )

    transaction_timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Upper bound on the execution time of one atomic unit"
    )


def load_settings() -> Settings:
    """Load settings with proper error handling."""
    try:
        settings = Settings()
    except Exception as e:
        error_msg = f"Failed to load settings: {e}"
        if "storage_backend" in str(e).lower():
            error_msg += "\nSTORAGE_BACKEND must be 'memory' or 'postgres'"
        raise ValueError(error_msg) from e

    if settings.storage_backend not in ("memory", "postgres"):
        raise ValueError(
            f"Failed to load settings: unknown storage backend '{settings.storage_backend}'"
            "\nSTORAGE_BACKEND must be 'memory' or 'postgres'"
        )
    if settings.storage_backend == "postgres" and not settings.database_url:
        raise ValueError(
            "Failed to load settings: database_url is required for the postgres backend"
            "\nMake sure to set DATABASE_URL in your .env file"
        )
    return settings
