"""
workqueue - Configuration Module
================================
All configuration is loaded from environment variables (prefix ``WORKQUEUE_``)
and an optional ``.env`` file.
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerInstanceSettings(BaseModel):
    """One named worker inside a worker process."""

    name: str = Field(..., min_length=1, max_length=64)
    task_types: list[str] = Field(default_factory=list)
    omit_task_types: list[str] | None = None
    concurrency: int | None = Field(default=None, ge=1)
    task_timeout_seconds: float | None = Field(default=None, gt=0)
    handler_types: list[str] | None = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="WORKQUEUE_",
        extra="ignore",
    )

    # App
    app_name: str = "workqueue"
    app_env: str = "development"
    app_debug: bool = False

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "workqueue"
    postgres_user: str = "workqueue"
    postgres_password: str = "workqueue"
    database_url_override: str = ""
    database_pool_size: int = 20
    database_max_overflow: int = 10

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        if self.database_url_override:
            return self.database_url_override.replace("+asyncpg", "").replace("+aiosqlite", "")
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Jobs / Workers
    job_concurrency: int = Field(default=5, ge=1)
    job_timeout_seconds: float = Field(default=300.0, gt=0)
    job_poll_interval_seconds: float = Field(default=1.0, gt=0)
    job_lock_duration_seconds: float = Field(default=300.0, gt=0)
    job_stale_check_interval_seconds: float = Field(default=60.0, gt=0)
    job_default_max_attempts: int = Field(default=3, ge=1, le=100)
    worker_instances: list[WorkerInstanceSettings] = Field(default_factory=list)
    handler_modules: list[str] = Field(
        default_factory=lambda: ["workqueue.queue.tasks.example_handlers"]
    )

    # Maintenance
    cleanup_enabled: bool = True
    cleanup_retention_days: int = Field(default=30, ge=1)
    cleanup_timezone: str = "UTC"
    cleanup_hour: int = Field(default=3, ge=0, le=23)
    cleanup_minute: int = Field(default=15, ge=0, le=59)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
