"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="MovieMatch", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_language: str = Field(default="en-US", alias="TMDB_LANGUAGE")
    tmdb_region: str = Field(default="US", alias="TMDB_REGION")

    queue_low_water_mark: int = Field(
        default=5, alias="QUEUE_LOW_WATER_MARK", ge=0, le=100
    )
    queue_target_size: int = Field(
        default=20, alias="QUEUE_TARGET_SIZE", ge=1, le=200
    )
    queue_max_pages: int = Field(default=10, alias="QUEUE_MAX_PAGES", ge=1, le=50)
    page_fetch_timeout: float = Field(
        default=15.0, alias="PAGE_FETCH_TIMEOUT", gt=0
    )
    provider_lookup_concurrency: int = Field(
        default=8, alias="PROVIDER_LOOKUP_CONCURRENCY", ge=1, le=64
    )
    max_sessions: int = Field(default=1000, alias="MAX_SESSIONS", ge=1)

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("tmdb_region", mode="before")
    @classmethod
    def _normalise_region(cls, value: object) -> object:
        """Watch-provider regions are ISO 3166-1 codes."""

        if isinstance(value, str):
            cleaned = value.strip().upper()
            if len(cleaned) != 2 or not cleaned.isalpha():
                raise ValueError("TMDB_REGION must be a two-letter country code")
            return cleaned
        return value

    @field_validator("tmdb_api_key", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @model_validator(mode="after")
    def _check_queue_watermarks(self) -> "Settings":
        """The refill trigger must sit below the refill target."""

        if self.queue_low_water_mark >= self.queue_target_size:
            raise ValueError(
                "QUEUE_LOW_WATER_MARK must be smaller than QUEUE_TARGET_SIZE"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
