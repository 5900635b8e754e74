from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from stock_tracker.errors import CacheReadError, CacheWriteError, FetchFailedError, OperationCancelledError
from stock_tracker.schemas.symbol import DirectoryEntry, SymbolRecord, normalize_symbol
from stock_tracker.services.retry import raise_if_cancelled
from stock_tracker.services.symbol_pool import LatestQuoteIndex, SymbolPool

logger = logging.getLogger(__name__)

MAX_FANOUT = 24


def default_concurrency() -> int:
    return min(4 * (os.cpu_count() or 1), MAX_FANOUT)


class HydrationState(str, Enum):
    COLD_START = "COLD_START"
    CACHE_LOOKUP = "CACHE_LOOKUP"
    CACHE_HIT = "CACHE_HIT"
    CACHE_MISS = "CACHE_MISS"
    DIRECTORY_FETCH = "DIRECTORY_FETCH"
    ENRICHMENT = "ENRICHMENT"
    PUBLISH = "PUBLISH"
    DONE = "DONE"


@dataclass
class HydrationResult:
    source: str = "none"
    published: int = 0
    failed: list[str] = field(default_factory=list)
    cache_written: bool = False
    states: list[HydrationState] = field(default_factory=list)


def dedupe_entries(entries: list[DirectoryEntry]) -> list[DirectoryEntry]:
    """Case-insensitive de-duplication; the first non-blank name wins."""
    names: dict[str, str] = {}
    for entry in entries:
        key = normalize_symbol(entry.symbol)
        if not key:
            continue
        name = entry.name.strip()
        if key not in names:
            names[key] = name
        elif not names[key] and name:
            names[key] = name
    return [DirectoryEntry(symbol=symbol, name=name) for symbol, name in names.items()]


class HydrationOrchestrator:
    """Startup hydration: cache first, then directory fetch plus bounded quote fan-out."""

    def __init__(
        self,
        *,
        store,
        directory,
        quote_client,
        pool: SymbolPool,
        quote_index: LatestQuoteIndex,
        max_items: int = 1000,
        max_concurrency: int | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.quote_client = quote_client
        self.pool = pool
        self.quote_index = quote_index
        self.max_items = max_items
        self.max_concurrency = max(1, max_concurrency or default_concurrency())
        self.state = HydrationState.COLD_START
        self.last_result: HydrationResult | None = None
        self._result = HydrationResult()

    def _enter(self, state: HydrationState) -> None:
        self.state = state
        self._result.states.append(state)

    def _publish(self, record: SymbolRecord) -> None:
        self.quote_index.upsert(record)
        self.pool.append(record)

    def _lookup_cache(self) -> list[SymbolRecord] | None:
        self._enter(HydrationState.CACHE_LOOKUP)
        try:
            return self.store.load()
        except CacheReadError as exc:
            logger.warning("[HYDRATE][cache_read_error] fallback=cold_fetch error=%s", exc)
            return None

    def _enrich_one(
        self,
        entry: DirectoryEntry,
        gate: threading.BoundedSemaphore,
        cancel: threading.Event | None,
    ) -> SymbolRecord | None:
        try:
            raise_if_cancelled(cancel)
            quote = self.quote_client.get_quote(entry.symbol, cancel)
            record = SymbolRecord.from_quote(entry.symbol, quote, fallback_name=entry.name)
            self._publish(record)
            return record
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.warning("[HYDRATE][enrich_error] symbol=%s error=%s", entry.symbol, exc)
            return None
        finally:
            gate.release()

    def _enrich(self, entries: list[DirectoryEntry], cancel: threading.Event | None) -> dict[str, SymbolRecord]:
        self._enter(HydrationState.ENRICHMENT)
        gate = threading.BoundedSemaphore(self.max_concurrency)
        futures = {}
        cancelled = False
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="hydrate") as executor:
            for entry in entries:
                # poll so a cancel is seen while waiting for a free slot
                while not gate.acquire(timeout=0.25):
                    if cancel is not None and cancel.is_set():
                        break
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                futures[entry.symbol] = executor.submit(self._enrich_one, entry, gate, cancel)

        enriched: dict[str, SymbolRecord] = {}
        for symbol, future in futures.items():
            try:
                record = future.result()
            except OperationCancelledError:
                cancelled = True
                continue
            if record is None:
                self._result.failed.append(symbol)
            else:
                enriched[symbol] = record

        if cancelled:
            logger.warning("[HYDRATE][cancelled] enriched=%s", len(enriched))
            raise OperationCancelledError("HYDRATION_CANCELLED")
        return enriched

    def hydrate(self, cancel: threading.Event | None = None) -> HydrationResult:
        self._result = HydrationResult()
        self.state = HydrationState.COLD_START
        self._result.states.append(HydrationState.COLD_START)
        try:
            return self._run(cancel)
        finally:
            self.last_result = self._result

    def _run(self, cancel: threading.Event | None) -> HydrationResult:
        result = self._result

        cached = self._lookup_cache()
        if cached:
            self._enter(HydrationState.CACHE_HIT)
            for record in cached:
                self._publish(record)
            result.source = "cache"
            result.published = len(cached)
            self._enter(HydrationState.DONE)
            logger.info("[HYDRATE][cache_hit] count=%s", result.published)
            return result

        self._enter(HydrationState.CACHE_MISS)
        result.source = "cold"
        self._enter(HydrationState.DIRECTORY_FETCH)
        try:
            entries = self.directory.fetch_symbols(self.max_items, cancel)
        except FetchFailedError as exc:
            logger.error("[HYDRATE][directory_failed] error=%s", exc)
            self._enter(HydrationState.DONE)
            return result

        unique = dedupe_entries(entries)
        logger.info(
            "[HYDRATE][cache_miss] directory_count=%s unique_count=%s concurrency=%s",
            len(entries),
            len(unique),
            self.max_concurrency,
        )
        enriched = self._enrich(unique, cancel)

        self._enter(HydrationState.PUBLISH)
        ordered = [enriched[e.symbol] for e in unique if e.symbol in enriched]
        result.published = len(ordered)
        if ordered:
            try:
                self.store.save(ordered)
                result.cache_written = True
            except CacheWriteError as exc:
                logger.error("[HYDRATE][cache_write_error] error=%s", exc)

        self._enter(HydrationState.DONE)
        logger.info(
            "[HYDRATE][done] source=cold published=%s failed=%s cache_written=%s",
            result.published,
            len(result.failed),
            int(result.cache_written),
        )
        return result

    def metrics(self) -> dict:
        result = self.last_result
        return {
            "state": self.state.value,
            "source": result.source if result else None,
            "published": result.published if result else 0,
            "failed": len(result.failed) if result else 0,
            "cache_written": result.cache_written if result else False,
        }
