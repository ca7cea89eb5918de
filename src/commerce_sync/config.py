"""Application configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.constants import DEFAULT_PAGE_SIZE, DEFAULT_WEBHOOK_TOPICS, MAX_PAGES


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_name: str = "commerce-sync"
    app_env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # API Settings
    # -------------------------------------------------------------------------
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 4
    public_base_url: str = "http://localhost:8000"

    # -------------------------------------------------------------------------
    # Upstream Commerce API
    # -------------------------------------------------------------------------
    commerce_api_version: str = "2023-10"
    commerce_api_timeout: float = 30.0
    commerce_page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=250)
    commerce_max_pages: int = Field(default=MAX_PAGES, ge=1)
    commerce_page_delay_seconds: float = 0.5
    commerce_retry_after_fallback_seconds: float = 2.0
    commerce_max_rate_limit_retries: int = 5
    commerce_rate_limit_budget_seconds: float = 60.0

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------
    webhook_secret: str = "change-me-in-production"
    webhook_topics: list[str] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_TOPICS))

    @field_validator("webhook_topics", mode="before")
    @classmethod
    def parse_webhook_topics(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [topic.strip() for topic in v.split(",") if topic.strip()]
        return v

    # -------------------------------------------------------------------------
    # PostgreSQL Database
    # -------------------------------------------------------------------------
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "commerce"
    postgres_password: str = ""
    postgres_db: str = "commerce_sync"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        """Construct synchronous PostgreSQL connection URL (for Alembic)."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # -------------------------------------------------------------------------
    # Redis
    # -------------------------------------------------------------------------
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL, defaulting to Redis URL."""
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL, defaulting to Redis URL."""
        return self.celery_result_backend or self.redis_url

    # -------------------------------------------------------------------------
    # Sync Scheduling
    # -------------------------------------------------------------------------
    sync_cron_hour: int = Field(default=2, ge=0, le=23)
    sync_cron_minute: int = Field(default=0, ge=0, le=59)
    fleet_sync_concurrency: int = Field(default=4, ge=1)
    sync_lock_ttl_seconds: int = 6 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
