"""
Application Settings.

Centralized configuration using Pydantic Settings with environment variable loading.
Every setting has a default, so the CLI runs without any environment.

Production Mode:
    When app_env="production", additional validations apply:
    - log_format must be "json"
    - lock_timeout_seconds must be positive
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SITESTACK_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SITESTACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------
    state_path: Path = Field(
        default=Path("sitestack.state.json"),
        description="Path of the JSON state snapshot",
    )
    lock_timeout_seconds: float = Field(
        default=0.0,
        ge=0,
        description="How long to wait for the state lock before failing (0 = fail fast)",
    )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Operations run concurrently within one dependency level",
    )
    retry_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts per control plane call for transient failures",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base delay for exponential backoff between retries",
    )
    retry_backoff_max_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for a single backoff delay",
    )

    # -------------------------------------------------------------------------
    # AWS
    # -------------------------------------------------------------------------
    aws_region: str = Field(
        default="us-east-1",
        description="Default region when the document does not name one",
    )
    aws_endpoint_url: str | None = Field(
        default=None,
        description="Override endpoint, e.g. a LocalStack URL",
    )
    cloudfront_wait_timeout_seconds: int = Field(
        default=1800,
        description="Max time to wait for a distribution to finish deploying",
    )

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="structlog renderer",
    )
    metrics_textfile: Path | None = Field(
        default=None,
        description="Write Prometheus metrics to this file after each CLI run",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def lock_path(self) -> Path:
        """Lock file that sits next to the state file."""
        return self.state_path.with_name(self.state_path.name + ".lock")

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate that production settings are sane."""
        if self.app_env == "production":
            errors = []

            if self.log_format != "json":
                errors.append("log_format must be 'json' in production")

            if self.lock_timeout_seconds <= 0:
                errors.append("lock_timeout_seconds must be positive in production")

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )

        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings if needed.
    """
    return Settings()
