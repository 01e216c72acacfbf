"""Centralized configuration via pydantic-settings, loaded from env and .env."""

from __future__ import annotations

import functools
import json
from typing import Annotated, Any

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from stockmarket.errors import ConfigInvalid
from stockmarket.models import normalize_symbol


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STOCKMARKET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Symbols ────────────────────────────────────────────────────────
    # Comma-separated ("AAPL, msft,BRK.B") or a JSON list in the environment, a list in code.
    symbols: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # ── Quote API ──────────────────────────────────────────────────────
    api_key: str = ""
    quote_url: str = "https://api.stockmarket.example/v1/quote/{symbol}"
    api_key_param: str = "apikey"
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    # ── Retry / backoff ────────────────────────────────────────────────
    max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max_seconds: float = Field(default=5.0, ge=0)
    backoff_jitter: float = Field(default=0.5, ge=0, le=1)

    # ── Rate limiting ──────────────────────────────────────────────────
    rate_limit_calls: int = Field(default=5, ge=1)
    rate_limit_period_seconds: float = Field(default=60.0, gt=0)
    min_request_interval_seconds: float = Field(default=0.0, ge=0)
    rate_limited_cooldown_seconds: float = Field(default=60.0, ge=0)
    fetch_concurrency: int = Field(default=4, ge=1)

    # ── Scheduling / validation cache ──────────────────────────────────
    poll_interval_seconds: int = Field(default=300, ge=1)
    revalidate_interval_seconds: int = Field(default=86400, ge=0)

    # ── Infrastructure ─────────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379/0"
    state_namespace: str = "stockmarket.0"

    # ── Operational ────────────────────────────────────────────────────
    log_level: str = "INFO"
    mock_mode: bool = False

    @field_validator("symbols", mode="before")
    @classmethod
    def _split_symbols(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                try:
                    return json.loads(text)
                except ValueError as exc:
                    raise ValueError(f"symbols is not a valid JSON list: {exc}") from exc
            return [part for part in text.split(",") if part.strip()]
        return value

    @field_validator("symbols")
    @classmethod
    def _normalize_symbols(cls, value: list[str]) -> list[str]:
        try:
            normalized = [normalize_symbol(v) for v in value]
        except ConfigInvalid as exc:
            raise ValueError(str(exc)) from exc
        return list(dict.fromkeys(normalized))

    @field_validator("quote_url")
    @classmethod
    def _check_quote_url(cls, value: str) -> str:
        if "{symbol}" not in value:
            raise ValueError("quote_url must contain a {symbol} placeholder")
        return value

    @model_validator(mode="after")
    def _check_backoff(self) -> Settings:
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self


def load_settings(**overrides: Any) -> Settings:
    """Build settings, reporting any validation failure as :class:`ConfigInvalid`."""
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigInvalid(str(exc)) from exc


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton accessor for the global settings."""
    return load_settings()
