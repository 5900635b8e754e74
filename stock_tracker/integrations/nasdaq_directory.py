from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import requests

from stock_tracker.errors import FetchFailedError
from stock_tracker.schemas.symbol import DirectoryEntry
from stock_tracker.services.retry import RetrySchedule, SleepFn, exponential_delay, raise_if_cancelled, sleep_or_cancel

logger = logging.getLogger(__name__)

NASDAQ_LISTED_URL = "https://www.nasdaqtrader.com/dynamic/SymDir/nasdaqlisted.txt"
FOOTER_MARKER = "File Creation Time"
MIN_FIELDS = 8

# one initial request plus five retries waiting 2, 4, 8, 16, 32 seconds
MAX_ATTEMPTS = 6


def _flag_set(value: str) -> bool:
    return value.strip().upper() == "Y"


def parse_directory(content: str, max_items: int = 1000) -> list[DirectoryEntry]:
    """Parse a pipe-delimited nasdaqlisted.txt body into (symbol, name) entries.

    Columns: Symbol|Security Name|Market Category|Test Issue|Financial Status|
    Round Lot Size|ETF|NextShares. The header row is skipped, parsing stops at the
    footer, and test issues and ETFs are dropped.
    """
    out: list[DirectoryEntry] = []
    if max_items <= 0:
        return out

    lines = [line for line in content.splitlines() if line]
    for raw_line in lines[1:]:
        line = raw_line.strip()
        if line.upper().startswith(FOOTER_MARKER.upper()):
            break

        parts = line.split("|")
        if len(parts) < MIN_FIELDS:
            continue

        symbol = parts[0].strip()
        name = parts[1].strip()
        if not symbol or not name:
            continue
        if _flag_set(parts[3]) or _flag_set(parts[6]):
            continue

        out.append(DirectoryEntry(symbol=symbol, name=name))
        if len(out) >= max_items:
            break

    return out


class SymbolDirectoryFetcher:
    """Downloads the NASDAQ symbol directory with retry and exponential backoff."""

    def __init__(
        self,
        *,
        session: Optional[Any] = None,
        url: str = NASDAQ_LISTED_URL,
        timeout_sec: float = 30.0,
        max_attempts: int = MAX_ATTEMPTS,
        sleep_fn: SleepFn = sleep_or_cancel,
    ) -> None:
        self.session = session or requests
        self.url = url
        self.timeout_sec = timeout_sec
        self.max_attempts = max_attempts
        self.sleep_fn = sleep_fn

    def _download(self, cancel: threading.Event | None) -> str:
        schedule = RetrySchedule(
            max_attempts=self.max_attempts,
            delay_fn=lambda attempt: exponential_delay(attempt + 1),
        )
        reason = "no attempt made"
        while not schedule.exhausted:
            raise_if_cancelled(cancel)
            schedule.begin()
            try:
                response = self.session.get(self.url, timeout=self.timeout_sec)
            except requests.RequestException as exc:
                reason = str(exc)
            else:
                if 200 <= response.status_code < 300:
                    return response.text
                reason = f"HTTP {response.status_code}"

            delay = schedule.next_delay()
            if delay is None:
                break
            logger.info(
                "[DIRECTORY][retry] attempt=%s delay=%.0fs reason=%s", schedule.attempt, delay, reason
            )
            self.sleep_fn(delay, cancel)

        logger.error("[DIRECTORY][fetch_failed] attempts=%s reason=%s", schedule.attempt, reason)
        raise FetchFailedError(f"symbol directory fetch failed after {schedule.attempt} attempts: {reason}")

    def fetch_symbols(self, max_items: int = 1000, cancel: threading.Event | None = None) -> list[DirectoryEntry]:
        content = self._download(cancel)
        entries = parse_directory(content, max_items)
        logger.info("[DIRECTORY][parsed] count=%s", len(entries))
        return entries
