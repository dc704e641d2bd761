# scripttask/core/config.py
from __future__ import annotations

from typing import Optional

import pytz
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_ENVIRONMENTS = {"development", "dev", "local", "test", "testing", "production"}


class Settings(BaseSettings):
    """
    Application settings, loaded from environment variables and/or .env file.
    """

    # Environment settings
    APP_NAME: str = "ScriptTask Scheduler"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "sqlite:///./scripttask.db"

    # Observability settings
    SENTRY_DSN: Optional[str] = None
    ALERT_WEBHOOK_URL: Optional[str] = None

    # Scheduler settings
    SCHEDULER_DEFAULT_TIMEZONE: str = "UTC"
    SCHEDULER_MAX_CONCURRENT_JOBS: int = Field(
        default=50, description="Process-wide ceiling on pending + running jobs"
    )
    SCHEDULER_QUEUE_CHECK_INTERVAL_SECONDS: float = 30.0

    # Remediation settings
    JOB_POLL_INTERVAL_SECONDS: float = 2.0
    STEP_DEFAULT_TIMEOUT_SECONDS: int = 300
    RETRY_DEFAULT_MAX_ATTEMPTS: int = 3
    RETRY_DEFAULT_DELAY_SECONDS: int = 60
    RETRY_MAX_DELAY_SECONDS: int = 3600  # 1 hour
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    EXECUTION_LIST_DEFAULT_LIMIT: int = 50

    @field_validator("APP_ENV")
    @classmethod
    def _validate_env(cls, value: str) -> str:
        if value.lower() not in KNOWN_ENVIRONMENTS:
            raise ValueError(f"Unknown APP_ENV: {value}")
        return value

    @field_validator("SCHEDULER_DEFAULT_TIMEZONE")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        """Reject timezone names pytz does not know about."""
        if value not in pytz.all_timezones_set:
            raise ValueError(f"Invalid timezone: {value}")
        return value

    @property
    def is_development(self) -> bool:
        return self.APP_ENV.lower() in ("development", "dev", "local")

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


settings = Settings()
