from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable

from stock_tracker.errors import ClockRegressionError, ConfigurationError

# 2020-01-01T00:00:00Z
EPOCH_MS = int(datetime(2020, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)

MACHINE_ID_BITS = 10
SEQUENCE_BITS = 12
MAX_MACHINE_ID = (1 << MACHINE_ID_BITS) - 1
MAX_SEQUENCE = (1 << SEQUENCE_BITS) - 1


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class UniqueIdGenerator:
    """Snowflake-style ids: (ms since epoch << 22) | (machine_id << 12) | sequence."""

    def __init__(self, machine_id: int, *, clock_ms: Callable[[], int] | None = None) -> None:
        if not 0 <= machine_id <= MAX_MACHINE_ID:
            raise ConfigurationError(f"machine_id must be between 0 and {MAX_MACHINE_ID}")
        self.machine_id = machine_id
        self._clock_ms = clock_ms or _wall_clock_ms
        self._lock = threading.Lock()
        self._last_timestamp = -1
        self._sequence = 0

    def _timestamp(self) -> int:
        return self._clock_ms() - EPOCH_MS

    def _wait_next_millis(self, last_timestamp: int) -> int:
        timestamp = self._timestamp()
        while timestamp <= last_timestamp:
            if timestamp < last_timestamp:
                raise ClockRegressionError(
                    f"clock moved backwards by {last_timestamp - timestamp}ms while waiting for next millisecond"
                )
            timestamp = self._timestamp()
        return timestamp

    def next_id(self) -> int:
        with self._lock:
            timestamp = self._timestamp()

            if timestamp < self._last_timestamp:
                raise ClockRegressionError(
                    f"clock moved backwards by {self._last_timestamp - timestamp}ms; refusing to generate id"
                )

            if timestamp == self._last_timestamp:
                self._sequence = (self._sequence + 1) & MAX_SEQUENCE
                if self._sequence == 0:
                    timestamp = self._wait_next_millis(self._last_timestamp)
            else:
                self._sequence = 0

            self._last_timestamp = timestamp
            return (
                (timestamp << (MACHINE_ID_BITS + SEQUENCE_BITS))
                | (self.machine_id << SEQUENCE_BITS)
                | self._sequence
            )
