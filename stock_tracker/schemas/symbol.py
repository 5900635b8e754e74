from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_FNV_OFFSET_BASIS = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK_64 = 0xFFFFFFFFFFFFFFFF


def normalize_symbol(value: str) -> str:
    return str(value).strip().upper()


def symbol_id(symbol: str) -> int:
    """Stable 64-bit FNV-1a hash of the upper-cased ticker."""
    h = _FNV_OFFSET_BASIS
    for byte in normalize_symbol(symbol).encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK_64
    return h


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DirectoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    name: str


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str | None = None
    price: Decimal = Decimal("0")
    market_time: datetime
    volume: float = 0.0

    @field_validator("market_time")
    @classmethod
    def to_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class SymbolRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    symbol: str
    display_name: str = ""
    last_price: Decimal = Decimal("0")
    market_time: datetime = Field(default_factory=_utcnow)
    volume: float = 0.0

    @field_validator("symbol")
    @classmethod
    def normalize(cls, value: str) -> str:
        value = normalize_symbol(value)
        if not value:
            raise ValueError("symbol must not be empty")
        return value

    @field_validator("display_name", mode="before")
    @classmethod
    def blank_name(cls, value):
        return "" if value is None else str(value).strip()

    @field_validator("volume", mode="before")
    @classmethod
    def zero_volume(cls, value):
        return 0.0 if value is None else value

    @field_validator("market_time", mode="before")
    @classmethod
    def default_time(cls, value):
        if value is None:
            return _utcnow()
        return value

    @field_validator("market_time")
    @classmethod
    def to_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @classmethod
    def from_quote(cls, symbol: str, quote: Quote, *, fallback_name: str = "") -> "SymbolRecord":
        return cls(
            id=symbol_id(symbol),
            symbol=symbol,
            display_name=quote.name or fallback_name,
            last_price=quote.price,
            market_time=quote.market_time,
            volume=quote.volume,
        )
