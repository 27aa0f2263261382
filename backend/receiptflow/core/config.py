"""Simple configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    PROJECT_NAME: str = "receiptflow"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Database
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./receiptflow.db")

    # Redis (event publishing) and Dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    RECEIPT_EVENTS_ENABLED: bool = Field(default=False)
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Vision extraction (any OpenAI-compatible chat completions endpoint)
    VISION_API_KEY: Optional[str] = Field(default=None)
    VISION_API_BASE_URL: str = Field(default="https://api.groq.com/openai/v1")
    VISION_MODEL: str = Field(default="llama-3.2-90b-vision-preview")
    VISION_MAX_TOKENS: int = Field(default=1000)
    EXTRACTION_TIMEOUT_SECONDS: float = Field(default=30.0)
    # Canned outputs stand in for the vision service outside production
    EXTRACTION_FALLBACK_ENABLED: bool = Field(default=True)

    # Storage
    STORAGE_BACKEND: str = Field(default="filesystem")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")
    STORAGE_PUBLIC_BASE_URL: Optional[str] = Field(default=None)

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    ALLOWED_CONTENT_TYPES: set[str] = {"image/jpeg", "image/png", "image/webp"}

    # Usage limits
    FREE_MONTHLY_RECEIPT_SCANS: int = Field(default=30)

    # Queue maintenance
    STUCK_JOB_MINUTES: int = Field(default=10)
    COMPLETED_JOB_RETENTION_DAYS: int = Field(default=30)
    FAILED_JOB_RETENTION_DAYS: int = Field(default=7)
    MAINTENANCE_CRON_ENABLED: bool = Field(default=False)
    MAINTENANCE_CRON_INTERVAL_SECONDS: int = Field(default=300)

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    @property
    def is_production(self) -> bool:
        return (self.ENVIRONMENT or "development").lower() == "production"

    @property
    def extraction_fallback_allowed(self) -> bool:
        """Canned extraction output is never used in production."""
        return self.EXTRACTION_FALLBACK_ENABLED and not self.is_production


# Instantiate global settings
settings = Settings()

