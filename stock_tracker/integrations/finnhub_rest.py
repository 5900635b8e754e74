from __future__ import annotations

import logging
import math
import random
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

import requests

from stock_tracker.errors import (
    ConfigurationError,
    MalformedResponseError,
    QuoteFetchError,
    ThrottledError,
    TransientNetworkError,
)
from stock_tracker.schemas.symbol import Quote
from stock_tracker.services.rate_limiter import RateLimiter
from stock_tracker.services.retry import RetrySchedule, SleepFn, jittered_backoff, raise_if_cancelled, sleep_or_cancel

logger = logging.getLogger(__name__)

FINNHUB_BASE_URL = "https://finnhub.io/api/v1"
MAX_ATTEMPTS = 5


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After as delta-seconds or an HTTP date; None when absent or already past."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return seconds if math.isfinite(seconds) and seconds > 0 else None


def _to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    try:
        if value is None or value == "" or isinstance(value, bool):
            return default
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
    return result if result.is_finite() else default


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "" or isinstance(value, bool):
            return default
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return result if math.isfinite(result) else default


def _to_market_time(value: Any, now: datetime) -> datetime:
    try:
        if value is None or value == "" or isinstance(value, bool):
            return now
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return now


def parse_quote(payload: Any, now: datetime | None = None) -> Quote:
    """Map a Finnhub /quote body (c=price, t=unix seconds, v=volume) to a Quote."""
    if not isinstance(payload, dict):
        raise MalformedResponseError("quote payload must be an object")
    ref = now or datetime.now(timezone.utc)
    return Quote(
        name=None,
        price=_to_decimal(payload.get("c")),
        market_time=_to_market_time(payload.get("t"), ref),
        volume=_to_float(payload.get("v")),
    )


class FinnhubQuoteClient:
    """Rate-limited Finnhub quote client with jittered retry on throttling and 5xx."""

    def __init__(
        self,
        token: str,
        *,
        limiter: RateLimiter,
        session: Optional[Any] = None,
        base_url: str = FINNHUB_BASE_URL,
        timeout_sec: float = 10.0,
        max_attempts: int = MAX_ATTEMPTS,
        sleep_fn: SleepFn = sleep_or_cancel,
        backoff_fn: Callable[[int], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not token or not str(token).strip():
            raise ConfigurationError("FINNHUB_TOKEN missing")
        self.token = str(token).strip()
        self.limiter = limiter
        self.session = session or requests
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.max_attempts = max_attempts
        self.sleep_fn = sleep_fn
        self._rng = rng or random.Random()
        self.backoff_fn = backoff_fn or (lambda attempt: jittered_backoff(attempt, self._rng))

    def _request(self, symbol: str, cancel: threading.Event | None) -> Any:
        with self.limiter.lease(cancel):
            return self.session.get(
                f"{self.base_url}/quote",
                headers={"accept": "application/json", "X-Finnhub-Token": self.token},
                params={"symbol": symbol},
                timeout=self.timeout_sec,
            )

    def _attempt(self, symbol: str, cancel: threading.Event | None) -> Quote:
        """One HTTP round trip; raises the error class that decides the retry path."""
        try:
            response = self._request(symbol, cancel)
        except requests.RequestException as exc:
            raise TransientNetworkError(str(exc)) from exc

        status = int(response.status_code)
        if status == 429:
            raise ThrottledError(
                "HTTP 429",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise TransientNetworkError(f"HTTP {status}")
        if not 200 <= status < 300:
            raise QuoteFetchError(symbol, f"quote request for {symbol} failed with HTTP {status}", status_code=status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"quote body for {symbol} is not valid JSON") from exc
        return parse_quote(payload)

    def get_quote(self, symbol: str, cancel: threading.Event | None = None) -> Quote:
        schedule = RetrySchedule(max_attempts=self.max_attempts, delay_fn=self.backoff_fn)
        last_error: Exception | None = None
        while not schedule.exhausted:
            raise_if_cancelled(cancel)
            attempt = schedule.begin()
            try:
                return self._attempt(symbol, cancel)
            except ThrottledError as exc:
                last_error = exc
                delay = schedule.next_delay(override=exc.retry_after)
            except TransientNetworkError as exc:
                last_error = exc
                delay = schedule.next_delay()

            if delay is None:
                break
            logger.info(
                "[QUOTE][retry] symbol=%s attempt=%s delay=%.2fs reason=%s", symbol, attempt + 1, delay, last_error
            )
            self.sleep_fn(delay, cancel)

        raise QuoteFetchError(
            symbol,
            f"rate limit or server errors persisted for symbol {symbol}: {last_error}",
        ) from last_error
