import os
from functools import lru_cache

from pydantic import BaseModel, ValidationError, field_validator

from stock_tracker.errors import ConfigurationError

MAX_MACHINE_ID = 1023


class Settings(BaseModel):
    FINNHUB_TOKEN: str
    FINNHUB_RATE_PER_MINUTE: int = 50
    FINNHUB_QUEUE_LIMIT: int = 10_000
    REDIS_URL: str = "redis://localhost:6379/0"
    SYMBOL_CACHE_KEY: str = "symbols:v1"
    SYMBOL_CACHE_TTL_SEC: int = 24 * 3600
    SYMBOL_MAX_ITEMS: int = 1000
    MACHINE_ID: int = 0
    LOG_LEVEL: str = "INFO"

    @field_validator("FINNHUB_TOKEN")
    @classmethod
    def require_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("FINNHUB_TOKEN must not be blank")
        return value

    @field_validator("FINNHUB_RATE_PER_MINUTE")
    @classmethod
    def clamp_rate(cls, value: int) -> int:
        return max(1, value)

    @field_validator("FINNHUB_QUEUE_LIMIT")
    @classmethod
    def non_negative_queue(cls, value: int) -> int:
        if value < 0:
            raise ValueError("FINNHUB_QUEUE_LIMIT must be >= 0")
        return value

    @field_validator("MACHINE_ID")
    @classmethod
    def machine_id_in_range(cls, value: int) -> int:
        if not 0 <= value <= MAX_MACHINE_ID:
            raise ValueError(f"MACHINE_ID must be between 0 and {MAX_MACHINE_ID}")
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            "FINNHUB_TOKEN": os.getenv("FINNHUB_TOKEN"),
            "FINNHUB_RATE_PER_MINUTE": os.getenv("FINNHUB_RATE_PER_MINUTE"),
            "FINNHUB_QUEUE_LIMIT": os.getenv("FINNHUB_QUEUE_LIMIT"),
            "REDIS_URL": os.getenv("REDIS_URL"),
            "SYMBOL_CACHE_KEY": os.getenv("SYMBOL_CACHE_KEY"),
            "SYMBOL_CACHE_TTL_SEC": os.getenv("SYMBOL_CACHE_TTL_SEC"),
            "SYMBOL_MAX_ITEMS": os.getenv("SYMBOL_MAX_ITEMS"),
            "MACHINE_ID": os.getenv("MACHINE_ID"),
            "LOG_LEVEL": os.getenv("LOG_LEVEL"),
        }
        # unset optional vars fall back to field defaults; the token stays so it fails loudly
        payload = {k: v for k, v in raw.items() if v is not None or k == "FINNHUB_TOKEN"}
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid configuration: {exc}") from exc


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
