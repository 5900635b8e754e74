from __future__ import annotations


class StockTrackerError(Exception):
    """Base class for every typed failure raised by the tracker."""


class ConfigurationError(StockTrackerError):
    pass


class TransientNetworkError(StockTrackerError):
    pass


class ThrottledError(TransientNetworkError):
    def __init__(self, message: str = "THROTTLED", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponseError(StockTrackerError):
    pass


class FetchFailedError(StockTrackerError):
    pass


class QuoteFetchError(StockTrackerError):
    def __init__(self, symbol: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.symbol = symbol
        self.status_code = status_code


class RateLimitQueueFullError(StockTrackerError):
    pass


class OperationCancelledError(StockTrackerError):
    pass


class ClockRegressionError(StockTrackerError):
    pass


class NoSymbolsAvailableError(StockTrackerError):
    def __init__(self, host_id: int) -> None:
        super().__init__("NO_SYMBOLS_AVAILABLE")
        self.host_id = host_id


class CacheReadError(StockTrackerError):
    pass


class CacheWriteError(StockTrackerError):
    pass
