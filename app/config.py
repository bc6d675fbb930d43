"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="WatchState", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    trakt_client_id: str | None = Field(default=None, alias="TRAKT_CLIENT_ID")
    trakt_access_token: str | None = Field(default=None, alias="TRAKT_ACCESS_TOKEN")
    trakt_api_url: HttpUrl = Field(
        default="https://api.trakt.tv", alias="TRAKT_API_URL"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )

    remote_timeout_seconds: float = Field(
        default=4.0, alias="REMOTE_TIMEOUT_SECONDS", ge=0.5, le=30.0
    )
    season_fetch_concurrency: int = Field(
        default=4, alias="SEASON_FETCH_CONCURRENCY", ge=1, le=16
    )
    watched_threshold_percent: int = Field(
        default=90, alias="WATCHED_THRESHOLD_PERCENT", ge=1, le=100
    )
    max_continue_watching: int = Field(
        default=20, alias="MAX_CONTINUE_WATCHING", ge=1, le=100
    )
    max_progress_entries: int = Field(
        default=50, alias="MAX_PROGRESS_ENTRIES", ge=1, le=500
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./watchstate.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("trakt_client_id", "trakt_access_token", "tmdb_api_key", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        """Treat blank credentials as missing."""

        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
