"""Application configuration using Pydantic Settings."""

import os
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# 20 MiB, the largest image or mask the remote service accepts
DEFAULT_MAX_PAYLOAD_BYTES = 20 * 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote AI service
    ai_base_url: str = Field(
        default="http://localhost:8095",
        description="Base URL of the remote AI analysis/generation service",
        pattern=r"^https?://.*",
    )
    ai_api_key: SecretStr | None = Field(
        default=None,
        description="Bearer credential presented to the remote AI service",
    )
    ai_connect_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Maximum time to establish a connection to the AI service (seconds)",
    )
    analysis_instructions: str = Field(
        default=(
            "Identify the objects inside the masked area, describe the surrounding "
            "background, textures, lighting and shadows, and write a precise prompt "
            "that reconstructs the area seamlessly without the marked objects."
        ),
        description="Instructions sent with every analysis request",
    )

    # Rate limiting (per operation name)
    max_requests_per_minute: int = Field(
        default=60,
        ge=1,
        le=10000,
        description="Maximum admissions per operation within the rate window",
    )
    rate_window_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Length of the sliding rate window in seconds",
    )
    max_concurrent: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Maximum in-flight remote calls per operation",
    )

    # Circuit breaker (per operation name)
    breaker_threshold: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Failure ratio over the outcome log that opens the circuit",
    )
    breaker_min_samples: int = Field(
        default=5,
        ge=1,
        le=1000,
        description="Outcomes required before the failure ratio is evaluated",
    )
    breaker_window_size: int = Field(
        default=5,
        ge=1,
        le=1000,
        description="Number of recent outcomes kept in the outcome log",
    )
    breaker_open_duration: float = Field(
        default=15.0,
        gt=0.0,
        le=3600.0,
        description="Seconds the circuit stays open before a trial call is allowed",
    )

    # Retry policy
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Total attempts per remote call, including the first",
    )
    retry_base_backoff: float = Field(
        default=0.5,
        ge=0.0,
        description="Base delay before the first retry (seconds)",
    )
    retry_max_backoff: float = Field(
        default=8.0,
        ge=0.0,
        description="Upper bound on the exponential part of the retry delay (seconds)",
    )

    # Timeouts
    analyze_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-attempt timeout for the analysis call (seconds)",
    )
    generate_timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Per-attempt timeout for the generation call (seconds)",
    )
    pipeline_timeout: float = Field(
        default=180.0,
        gt=0.0,
        description="Overall deadline for one pipeline request when the caller sets none",
    )

    # Payload limits
    max_payload_bytes: int = Field(
        default=DEFAULT_MAX_PAYLOAD_BYTES,
        ge=1,
        description="Largest image or mask accepted, in bytes",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="text",
        description="Console log format: 'text' or 'json'",
    )
    log_file_path: str | None = Field(
        default="data/logs/editpipeline.log",
        description="Path for rotating log file (empty disables file logging)",
    )
    log_file_max_bytes: int = Field(
        default=10485760,  # 10MB
        description="Maximum size of each log file in bytes",
    )
    log_file_backup_count: int = Field(
        default=5,
        description="Number of backup log files to keep",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only plain text and JSON output are supported."""
        fmt = v.lower()
        if fmt not in {"text", "json"}:
            raise ValueError(f"Invalid log format: {v}. Expected 'text' or 'json'")
        return fmt

    @field_validator("ai_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_resilience_bounds(self) -> "Settings":
        """Cross-field checks for breaker and retry configuration."""
        if self.breaker_min_samples > self.breaker_window_size:
            raise ValueError(
                f"breaker_min_samples ({self.breaker_min_samples}) cannot exceed "
                f"breaker_window_size ({self.breaker_window_size})"
            )
        if self.retry_base_backoff > self.retry_max_backoff:
            raise ValueError(
                f"retry_base_backoff ({self.retry_base_backoff}) cannot exceed "
                f"retry_max_backoff ({self.retry_max_backoff})"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    runtime_env_path = os.getenv("EDITPIPELINE_RUNTIME_ENV_PATH", "./data/runtime.env")
    # `_env_file` is evaluated at call time, so tests and deployments can point
    # at a different runtime file without re-importing this module.
    return Settings(_env_file=(".env", runtime_env_path))
