"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

import json
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Identity mapping settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Credentials (supplied by the secrets collaborator)
    SLACK_BOT_TOKEN: str = ""
    NOTION_API_KEY: str = ""
    GOOGLE_SERVICE_ACCOUNT_JSON: str = ""  # Inline JSON or path to key file

    # Feature flags
    CALENDAR_ENABLED: bool = False
    USER_MAPPING_ENABLED: bool = True
    PARALLEL_PROCESSING: bool = True

    # Worker pool
    MIN_THREADS: int = 2
    MAX_THREADS: int = 10
    MAX_QUEUE: int = 100

    # Timeouts (seconds)
    API_TIMEOUT: float = 30.0
    MAPPING_TIMEOUT: float = 60.0

    # Rate limiting
    SLACK_RATE_LIMIT_PER_MINUTE: int = 50
    RATE_LIMIT_MAX_RETRIES: int = 3
    DEFAULT_RETRY_AFTER: float = 60.0

    # Caching (seconds)
    DIRECTORY_CACHE_TTL: float = 600.0  # 10 minutes
    LOOKUP_CACHE_TTL: float = 600.0

    # Directory paging
    SLACK_PAGE_SIZE: int = 200
    NOTION_PAGE_SIZE: int = 100
    SLACK_RESOLUTION_STRATEGY: str = "point"  # "point" or "prefetch"

    # Notion task database
    NOTION_ASSIGNEE_PROPERTY: str = "assignee"

    @field_validator("MAX_THREADS")
    @classmethod
    def _bound_max_threads(cls, value: int) -> int:
        if not 1 <= value <= 10:
            raise ValueError("MAX_THREADS must be between 1 and 10")
        return value

    @field_validator("SLACK_RESOLUTION_STRATEGY")
    @classmethod
    def _known_strategy(cls, value: str) -> str:
        value = value.lower()
        if value not in ("point", "prefetch"):
            raise ValueError("SLACK_RESOLUTION_STRATEGY must be 'point' or 'prefetch'")
        return value

    def get_service_account_info(self) -> dict[str, Any] | None:
        """Return the Google service account key as a dict.

        GOOGLE_SERVICE_ACCOUNT_JSON may hold the key itself (starts with "{")
        or a path to the key file. Returns None if neither is configured.
        """
        raw = self.GOOGLE_SERVICE_ACCOUNT_JSON.strip()
        if not raw:
            return None
        if raw.startswith("{"):
            return json.loads(raw)
        return json.loads(Path(raw).read_text(encoding="utf-8"))


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
