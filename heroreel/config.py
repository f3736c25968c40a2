"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="HeroReel", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./heroreel.db", alias="DATABASE_URL"
    )

    hero_policy_path: str | None = Field(default=None, alias="HERO_POLICY_PATH")
    hero_pipeline_enabled: bool | None = Field(
        default=None, alias="HERO_PIPELINE_ENABLED"
    )
    hero_api_url: HttpUrl | None = Field(default=None, alias="HERO_API_URL")
    hero_api_timeout_seconds: float = Field(
        default=20.0, alias="HERO_API_TIMEOUT", gt=0, le=120
    )

    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_access_token: str | None = Field(default=None, alias="TMDB_ACCESS_TOKEN")
    tmdb_timeout_seconds: float = Field(
        default=8.0, alias="TMDB_TIMEOUT", gt=0, le=60
    )

    autoplay_seconds: float = Field(default=15.0, alias="AUTOPLAY_SECONDS", gt=0)

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "hero_policy_path", "tmdb_access_token", "hero_api_url", mode="before"
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("hero_pipeline_enabled", mode="before")
    @classmethod
    def _parse_override(cls, value: object) -> object:
        """Treat blank values as "no override" rather than a validation error."""

        if isinstance(value, str) and not value.strip():
            return None
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
