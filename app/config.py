"""Application configuration models."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


DEFAULT_CONFIG_FILE = "config.yaml"
BUNDLED_DATASET_PATH = Path(__file__).resolve().parent / "data" / "movies.json"

SyncSourceKind = Literal["bundled", "http"]


class Settings(BaseSettings):
    """Settings loaded from environment variables, a .env file or config.yaml."""

    app_name: str = Field(default="Rasa Server", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=8001, alias="PORT", ge=1, le=65_535)

    database_url: str = Field(
        default="sqlite+aiosqlite:///./rasa.sqlite", alias="DATABASE_URL"
    )

    sync_source: SyncSourceKind = Field(default="bundled", alias="SYNC_SOURCE")
    sync_source_url: HttpUrl | None = Field(default=None, alias="SYNC_SOURCE_URL")
    sync_api_key: str | None = Field(default=None, alias="SYNC_API_KEY")
    bundled_dataset_path: Path | None = Field(default=None, alias="BUNDLED_DATASET")

    sync_interval_seconds: int = Field(default=21_600, alias="SYNC_INTERVAL", ge=60)
    sync_timeout_seconds: float = Field(default=20.0, alias="SYNC_TIMEOUT", gt=0)
    sync_retry_limit: int = Field(default=3, alias="SYNC_RETRY_LIMIT", ge=0, le=20)
    sync_backoff_seconds: float = Field(default=1.0, alias="SYNC_BACKOFF", ge=0)
    sync_backoff_max_seconds: float = Field(
        default=30.0, alias="SYNC_BACKOFF_MAX", ge=0
    )
    sync_page_size: int = Field(default=100, alias="SYNC_PAGE_SIZE", ge=1, le=1_000)
    sync_on_startup: bool = Field(default=True, alias="SYNC_ON_STARTUP")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("sync_source", mode="before")
    @classmethod
    def _normalise_sync_source(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or "bundled"
        return value

    @field_validator("sync_api_key", "sync_source_url", "bundled_dataset_path", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _parse_log_level(cls, value: object) -> str:
        """Accept standard logging level names in any case."""

        level = str(value or "INFO").strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level {value!r}")
        return level

    @property
    def dataset_path(self) -> Path:
        """Return the JSON dataset consumed by the bundled source."""

        return self.bundled_dataset_path or BUNDLED_DATASET_PATH

    @property
    def is_configured(self) -> bool:
        """Whether the selected metadata source has everything it needs."""

        if self.sync_source == "http":
            return self.sync_source_url is not None
        return self.dataset_path.is_file()

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Layer the setup wizard's YAML file underneath the environment."""

        yaml_file = os.environ.get("RASA_CONFIG_FILE") or DEFAULT_CONFIG_FILE
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
