"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


LANGUAGE_TAGS: dict[str, str] = {
    "en": "en-US",
    "fr": "fr-FR",
    "it": "it-IT",
    "ja": "ja-JP",
    "es": "es-ES",
    "de": "de-DE",
}

DEFAULT_SECONDARY_LANGUAGES: tuple[str, ...] = ("fr-FR", "it-IT", "ja-JP")


def normalize_language(value: str | None, default: str = "en-US") -> str:
    """Return the full catalog language tag for a short or full code."""

    if not value:
        return default
    cleaned = value.strip().replace("_", "-")
    if not cleaned:
        return default
    if "-" in cleaned:
        language, _, region = cleaned.partition("-")
        return f"{language.lower()}-{region.upper()}"
    return LANGUAGE_TAGS.get(cleaned.lower(), default)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="FastFlix", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_cast_limit: int = Field(default=5, alias="TMDB_CAST_LIMIT", ge=1, le=50)

    openrouter_api_key: str | None = Field(
        default=None, alias="OPENROUTER_API_KEY"
    )
    openrouter_model: str = Field(
        default="google/gemini-2.5-flash-lite", alias="OPENROUTER_MODEL"
    )
    openrouter_api_url: HttpUrl = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_API_URL"
    )

    revenuecat_api_key: str | None = Field(default=None, alias="REVENUECAT_API_KEY")
    revenuecat_api_url: HttpUrl = Field(
        default="https://api.revenuecat.com/v1", alias="REVENUECAT_API_URL"
    )

    max_free_invocations: int = Field(
        default=3, alias="MAX_FREE_PROMPTS", ge=0, le=1_000
    )
    recommendation_count: int = Field(
        default=20, alias="RECOMMENDATION_COUNT", ge=1, le=50
    )

    rate_limit_per_ip: int = Field(default=10, alias="RATE_LIMIT_PER_IP", ge=1)
    rate_limit_per_user: int = Field(default=5, alias="RATE_LIMIT_PER_USER", ge=1)
    rate_limit_window_seconds: float = Field(
        default=60.0, alias="RATE_LIMIT_WINDOW_SECONDS", gt=0
    )

    default_language: str = Field(default="en-US", alias="DEFAULT_LANGUAGE")
    default_region: str = Field(default="FR", alias="DEFAULT_REGION")
    secondary_languages: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_SECONDARY_LANGUAGES, alias="SECONDARY_LANGUAGES"
    )
    base_language: str = Field(default="en-US", alias="BASE_LANGUAGE")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./fastflix.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("default_language", "base_language", mode="before")
    @classmethod
    def _parse_language(cls, value: object) -> str:
        if value is None:
            return "en-US"
        return normalize_language(str(value))

    @field_validator("secondary_languages", mode="before")
    @classmethod
    def _parse_secondary_languages(cls, value: object) -> tuple[str, ...]:
        """Normalise fallback language selections from environment values."""

        if value is None:
            return DEFAULT_SECONDARY_LANGUAGES
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError(
                "SECONDARY_LANGUAGES must be a string or iterable of strings"
            )

        cleaned: list[str] = []
        for entry in raw_values:
            if not entry:
                continue
            tag = normalize_language(entry, default="")
            if not tag:
                raise ValueError(f"Unknown language configured: {entry}")
            if tag not in cleaned:
                cleaned.append(tag)
        if not cleaned:
            return DEFAULT_SECONDARY_LANGUAGES
        return tuple(cleaned)

    @field_validator("default_region", mode="before")
    @classmethod
    def _parse_region(cls, value: object) -> str:
        region = str(value or "").strip().upper()
        if len(region) != 2 or not region.isalpha():
            raise ValueError("DEFAULT_REGION must be a two-letter country code")
        return region

    def fallback_languages(self, primary: str | None = None) -> tuple[str, ...]:
        """Return the ordered search languages starting with ``primary``."""

        ordered = [normalize_language(primary, default=self.default_language)]
        ordered.extend(self.secondary_languages)
        ordered.append(self.base_language)
        unique: list[str] = []
        for language in ordered:
            if language not in unique:
                unique.append(language)
        return tuple(unique)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
