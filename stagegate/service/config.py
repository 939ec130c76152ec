"""
Configuration module for the Stagegate service.

Uses pydantic-settings for environment variable management with type validation.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BUNDLED_MANIFEST_DIR = Path(__file__).resolve().parent.parent / "manifests"


class StagegateConfig(BaseSettings):
    """Configuration for the workflow orchestration service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STAGEGATE_",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the service")
    port: int = Field(default=8000, description="Port to bind the service")
    reload: bool = Field(default=False, description="Enable auto-reload for development")

    # Workflow Configuration
    manifest_dir: str = Field(
        default=str(BUNDLED_MANIFEST_DIR),
        description="Directory containing workflow manifests (*.yaml)",
    )
    default_stage_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Stage timeout when a manifest omits one"
    )
    default_stage_retries: int = Field(
        default=2, ge=0, le=10, description="Stage retries when a manifest omits them"
    )
    retry_delay_seconds: float = Field(
        default=0.5, ge=0.0, description="Fixed delay between stage retry attempts"
    )
    max_concurrent_runs: int = Field(
        default=8, ge=1, description="Maximum background workflow runs in the service"
    )

    # Worker Configuration
    worker_service_url: Optional[str] = Field(
        default=None,
        description="Base URL used for workers that are not registered locally",
    )
    worker_http_timeout_seconds: float = Field(
        default=30.0, gt=0, description="HTTP client timeout for remote workers"
    )

    # Observability Configuration
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed_levels:
            raise ValueError(f"log_level must be one of {allowed_levels}")
        return v_upper

    @field_validator("worker_service_url")
    @classmethod
    def validate_worker_service_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the remote worker URL and strip any trailing slash."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("worker_service_url must start with http:// or https://")
        return v.rstrip("/")


# Global config instance
config = StagegateConfig()
