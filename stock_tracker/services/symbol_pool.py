from __future__ import annotations

import threading
from collections import deque
from typing import Iterable

from stock_tracker.schemas.symbol import SymbolRecord, normalize_symbol


class SymbolPool:
    """FIFO of unassigned records; each record is handed to at most one caller."""

    def __init__(self, records: Iterable[SymbolRecord] = ()) -> None:
        self._lock = threading.Lock()
        self._rows: deque[SymbolRecord] = deque(records)

    def append(self, record: SymbolRecord) -> None:
        with self._lock:
            self._rows.append(record)

    def extend(self, records: Iterable[SymbolRecord]) -> None:
        with self._lock:
            self._rows.extend(records)

    def pop_next(self) -> SymbolRecord | None:
        with self._lock:
            if not self._rows:
                return None
            return self._rows.popleft()

    def snapshot(self) -> list[SymbolRecord]:
        with self._lock:
            return list(self._rows)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class LatestQuoteIndex:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, SymbolRecord] = {}

    def upsert(self, record: SymbolRecord) -> bool:
        """Store the record unless a fresher quote for the symbol is already indexed."""
        with self._lock:
            current = self._rows.get(record.symbol)
            if current is not None and current.market_time > record.market_time:
                return False
            self._rows[record.symbol] = record
            return True

    def get(self, symbol: str) -> SymbolRecord | None:
        with self._lock:
            return self._rows.get(normalize_symbol(symbol))

    def list_all(self) -> list[SymbolRecord]:
        with self._lock:
            return list(self._rows.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
