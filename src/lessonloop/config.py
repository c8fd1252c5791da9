"""Configuration management for lessonloop."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from lessonloop.types import Format

DEFAULT_RUBRIC_WEIGHTS: dict[str, int] = {
    "accuracy": 30,
    "clarity": 25,
    "relevance": 20,
    "pedagogy": 15,
    "alignment": 10,
}
DEFAULT_FORMAT_PRECEDENCE: tuple[Format, ...] = (Format.FLASHCARDS, Format.VIDEO, Format.TEXT)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="LESSONLOOP_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Model
    model: str | None = Field(default=None, description="provider:model for the LLM backend")
    api_key: str | None = Field(default=None, description="API key for the LLM provider")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    max_tokens: int = Field(default=2000, ge=1, description="Maximum tokens per model call")

    # Pipeline
    pass_threshold: float = Field(default=70, ge=0, le=100, description="Minimum judge score to accept")
    max_attempts: int = Field(default=3, ge=1, description="Generate/evaluate attempts per cycle")
    history_cap: int = Field(default=1000, ge=1, description="Dispatcher history ring size")
    worker_timeout_seconds: float | None = Field(default=30.0, gt=0, description="Timeout per worker call")
    directive_cache_size: int = Field(default=256, ge=1, description="Style directive cache entries")
    rubric_weights: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_RUBRIC_WEIGHTS))
    format_precedence: Annotated[tuple[Format, ...], NoDecode] = Field(default=DEFAULT_FORMAT_PRECEDENCE)
    format_substitutions: dict[Format, Format] = Field(default_factory=dict)

    # Runtime
    log_level: str = Field(default="INFO", description="Log level")
    home: Path = Field(default_factory=lambda: Path.home() / ".lessonloop", description="CLI data directory")

    @field_validator("format_precedence", mode="before")
    @classmethod
    def _split_precedence(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("format_precedence")
    @classmethod
    def _check_precedence(cls, value: tuple[Format, ...]) -> tuple[Format, ...]:
        if len(set(value)) != len(value):
            raise ValueError("format_precedence must not repeat a format")
        if set(value) != set(Format):
            raise ValueError(f"format_precedence must list every format: {[item.value for item in Format]}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @property
    def offline(self) -> bool:
        return not self.model


def load_settings(**overrides: Any) -> Settings:
    """Build validated settings from the environment, `.env`, and explicit overrides."""

    return Settings(**overrides)
