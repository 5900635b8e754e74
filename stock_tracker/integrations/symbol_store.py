from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Optional

import redis
from pydantic import ValidationError

from stock_tracker.errors import CacheReadError, CacheWriteError
from stock_tracker.schemas.symbol import SymbolRecord, symbol_id

logger = logging.getLogger(__name__)

DEFAULT_KEY = "symbols:v1"
DEFAULT_TTL_SEC = 24 * 3600


def decode_records(raw: str | bytes) -> list[SymbolRecord]:
    """Decode the cached JSON array; entries without a symbol are skipped."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        rows = json.loads(raw)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise CacheReadError(f"cached symbol set is not valid JSON: {type(exc).__name__}") from exc
    if not isinstance(rows, list):
        raise CacheReadError("cached symbol set must be a JSON array")

    out: list[SymbolRecord] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        symbol = str(row.get("symbol") or "").strip()
        if not symbol:
            continue
        try:
            # identity is always re-derived from the ticker
            out.append(SymbolRecord.model_validate({**row, "id": symbol_id(symbol)}))
        except ValidationError as exc:
            logger.warning("[CACHE][record_skip] symbol=%s reason=%s", symbol, exc.errors()[0].get("msg"))
    return out


def encode_records(records: Iterable[SymbolRecord]) -> str:
    return json.dumps([r.model_dump(mode="json") for r in records], separators=(",", ":"))


class SymbolStore:
    """Enriched symbol set kept in redis under a versioned key with a TTL."""

    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        url: str = "redis://localhost:6379/0",
        key: str = DEFAULT_KEY,
        ttl_sec: int = DEFAULT_TTL_SEC,
    ) -> None:
        self.client = client if client is not None else redis.Redis.from_url(url, decode_responses=True)
        self.key = key
        self.ttl_sec = ttl_sec

    def load(self) -> list[SymbolRecord] | None:
        """Return cached records, or None on a miss (absent, empty, or no usable rows)."""
        try:
            raw = self.client.get(self.key)
        except (redis.RedisError, UnicodeDecodeError) as exc:
            raise CacheReadError(f"cache read failed for key {self.key}: {exc}") from exc

        if raw is None or not raw.strip():
            return None
        records = decode_records(raw)
        return records or None

    def save(self, records: list[SymbolRecord]) -> None:
        try:
            self.client.setex(self.key, self.ttl_sec, encode_records(records))
        except redis.RedisError as exc:
            raise CacheWriteError(f"cache write failed for key {self.key}: {exc}") from exc
