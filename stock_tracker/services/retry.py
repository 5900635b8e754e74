from __future__ import annotations

import random
import threading
import time
from typing import Callable

from stock_tracker.errors import OperationCancelledError

SleepFn = Callable[[float, "threading.Event | None"], None]


def exponential_delay(attempt: int) -> float:
    """Directory feed delay: 2, 4, 8, 16, 32 seconds for retries 1..5."""
    return float(2**attempt)


def jittered_backoff(attempt: int, rng: random.Random | None = None) -> float:
    """Quote feed delay in seconds for a zero-based attempt.

    base = min(30s, 0.5s * 2^attempt); delay = base/2 + uniform(0, base).
    """
    base = min(30.0, 0.5 * (2**attempt))
    jitter = (rng or random).uniform(0.0, base)
    return base / 2 + jitter


def raise_if_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("OPERATION_CANCELLED")


def sleep_or_cancel(delay: float, cancel: threading.Event | None = None) -> None:
    if delay <= 0:
        raise_if_cancelled(cancel)
        return
    if cancel is None:
        time.sleep(delay)
        return
    if cancel.wait(delay):
        raise OperationCancelledError("OPERATION_CANCELLED")


class RetrySchedule:
    """Attempt counter with delay computation and a terminal state.

    Holds no locks or timers, so the same schedule drives a thread, a task, or a test.
    """

    def __init__(self, *, max_attempts: int, delay_fn: Callable[[int], float]) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.delay_fn = delay_fn
        self.attempt = 0
        self.last_delay: float | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def begin(self) -> int:
        """Start the next attempt and return its zero-based index."""
        if self.exhausted:
            raise RuntimeError("retry schedule exhausted")
        index = self.attempt
        self.attempt += 1
        return index

    def next_delay(self, override: float | None = None) -> float | None:
        """Delay before the next attempt, or None when no attempt remains."""
        if self.exhausted:
            self.last_delay = None
            return None
        if override is not None and override > 0:
            self.last_delay = float(override)
        else:
            self.last_delay = float(self.delay_fn(self.attempt - 1))
        return self.last_delay
