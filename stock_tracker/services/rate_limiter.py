from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Iterator

from stock_tracker.errors import OperationCancelledError, RateLimitQueueFullError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Admits at most ``permit_limit`` requests in any rolling ``window_sec`` window.

    Callers over the limit wait in a FIFO queue (oldest first) of at most ``queue_limit``
    entries; a caller arriving at a full queue fails fast with RateLimitQueueFullError.
    """

    def __init__(
        self,
        *,
        permit_limit: int = 50,
        window_sec: float = 60.0,
        queue_limit: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
        poll_interval_sec: float = 0.25,
    ) -> None:
        if permit_limit < 1:
            raise ValueError("permit_limit must be >= 1")
        if queue_limit < 0:
            raise ValueError("queue_limit must be >= 0")
        self.permit_limit = permit_limit
        self.window_sec = window_sec
        self.queue_limit = queue_limit
        self._clock = clock
        self._poll_interval_sec = poll_interval_sec
        self._cond = threading.Condition()
        self._admitted: deque[float] = deque()
        self._waiters: deque[object] = deque()
        self._in_flight = 0
        self._metrics = {
            "admitted": 0,
            "queued": 0,
            "rejected": 0,
            "cancelled": 0,
        }

    def _prune(self, now: float) -> None:
        horizon = now - self.window_sec
        while self._admitted and self._admitted[0] <= horizon:
            self._admitted.popleft()

    def _has_capacity(self) -> bool:
        return len(self._admitted) < self.permit_limit

    def _admit(self, now: float) -> None:
        self._admitted.append(now)
        self._metrics["admitted"] += 1

    def _wait_timeout(self, now: float) -> float:
        if self._has_capacity():
            return self._poll_interval_sec
        until_free = self._admitted[0] + self.window_sec - now
        return max(0.0, min(until_free, self._poll_interval_sec))

    def acquire(self, cancel: threading.Event | None = None) -> None:
        """Block until a permit is granted; never consumes a permit on failure."""
        with self._cond:
            now = self._clock()
            self._prune(now)
            if not self._waiters and self._has_capacity():
                self._admit(now)
                return

            if len(self._waiters) >= self.queue_limit:
                self._metrics["rejected"] += 1
                logger.warning(
                    "[RATE][queue_full] queue_depth=%s queue_limit=%s", len(self._waiters), self.queue_limit
                )
                raise RateLimitQueueFullError("RATE_LIMIT_QUEUE_FULL")

            ticket = object()
            self._waiters.append(ticket)
            self._metrics["queued"] += 1
            try:
                while True:
                    if cancel is not None and cancel.is_set():
                        self._metrics["cancelled"] += 1
                        raise OperationCancelledError("OPERATION_CANCELLED")
                    now = self._clock()
                    self._prune(now)
                    if self._waiters[0] is ticket and self._has_capacity():
                        self._waiters.popleft()
                        self._admit(now)
                        self._cond.notify_all()
                        return
                    self._cond.wait(self._wait_timeout(now))
            finally:
                if ticket in self._waiters:
                    self._waiters.remove(ticket)
                    self._cond.notify_all()

    @contextmanager
    def lease(self, cancel: threading.Event | None = None) -> Iterator[None]:
        self.acquire(cancel)
        with self._cond:
            self._in_flight += 1
        try:
            yield
        finally:
            with self._cond:
                self._in_flight -= 1

    def metrics(self) -> dict:
        with self._cond:
            self._prune(self._clock())
            return {
                **self._metrics,
                "permit_limit": self.permit_limit,
                "window_sec": self.window_sec,
                "in_window": len(self._admitted),
                "queue_depth": len(self._waiters),
                "in_flight": self._in_flight,
            }
