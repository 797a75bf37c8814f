"""Application configuration using Pydantic BaseSettings."""

import logging
from typing import Literal

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./tokensync.db", alias="DATABASE_URL"
    )
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")
    db_batch_size: int = Field(default=500, alias="DB_BATCH_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3001, alias="PORT")
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # RPC provider
    rpc_url: str = Field(default="", alias="RPC_URL")
    rpc_timeout_seconds: int = Field(default=30, alias="RPC_TIMEOUT_SECONDS")

    # Log fetching
    sync_chunk_size: int = Field(default=2000, alias="SYNC_CHUNK_SIZE")
    sync_min_split_size: int = Field(default=1000, alias="SYNC_MIN_SPLIT_SIZE")
    sync_chunk_delay_seconds: float = Field(default=0.1, alias="SYNC_CHUNK_DELAY_SECONDS")
    sync_retry_backoff_seconds: float = Field(default=10.0, alias="SYNC_RETRY_BACKOFF_SECONDS")
    sync_max_attempts: int = Field(default=5, alias="SYNC_MAX_ATTEMPTS")
    block_fetch_concurrency: int = Field(default=5, alias="BLOCK_FETCH_CONCURRENCY")
    block_cache_size: int = Field(default=10_000, alias="BLOCK_CACHE_SIZE")

    # Rate governance (RPC requests per window)
    rpc_rate_limit: int = Field(default=5, alias="RPC_RATE_LIMIT")
    rpc_rate_window_ms: int = Field(default=1000, alias="RPC_RATE_WINDOW_MS")
    rpc_rate_strategy: Literal["sliding", "fixed", "token_bucket"] = Field(
        default="sliding", alias="RPC_RATE_STRATEGY"
    )
    rpc_queue_retry_attempts: int = Field(default=3, alias="RPC_QUEUE_RETRY_ATTEMPTS")
    rpc_queue_retry_delay_seconds: float = Field(
        default=1.0, alias="RPC_QUEUE_RETRY_DELAY_SECONDS"
    )
    rpc_queue_max_size: int = Field(default=1000, alias="RPC_QUEUE_MAX_SIZE")

    # Scheduler
    max_queued_jobs: int = Field(default=100, alias="MAX_QUEUED_JOBS")
    job_eviction_seconds: int = Field(default=300, alias="JOB_EVICTION_SECONDS")

    # Gap detection and integrity
    max_gap_size: int = Field(default=100_000, alias="MAX_GAP_SIZE")
    missing_chunk_size: int = Field(default=5000, alias="MISSING_CHUNK_SIZE")
    integrity_check_interval_seconds: int = Field(
        default=0, alias="INTEGRITY_CHECK_INTERVAL_SECONDS"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with a list of every missing variable. Skipped in test
        environments so fixtures can build partial settings.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.rpc_url:
            missing.append("RPC_URL: JSON-RPC endpoint of an Ethereum-compatible provider")

        if self.sync_min_split_size > self.sync_chunk_size:
            missing.append("SYNC_MIN_SPLIT_SIZE: must not exceed SYNC_CHUNK_SIZE")

        if missing:
            error_msg = "CRITICAL: Invalid or missing environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.app_env == "production":
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
