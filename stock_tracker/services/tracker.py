from __future__ import annotations

import logging
import threading

from stock_tracker.config.settings import Settings
from stock_tracker.integrations.finnhub_rest import FinnhubQuoteClient
from stock_tracker.integrations.nasdaq_directory import SymbolDirectoryFetcher
from stock_tracker.integrations.symbol_store import SymbolStore
from stock_tracker.schemas.client import ClientRecord
from stock_tracker.schemas.symbol import SymbolRecord
from stock_tracker.services.assignment import AssignmentRegistry
from stock_tracker.services.hydration import HydrationOrchestrator, HydrationResult
from stock_tracker.services.id_generator import UniqueIdGenerator
from stock_tracker.services.rate_limiter import RateLimiter
from stock_tracker.services.symbol_pool import LatestQuoteIndex, SymbolPool

logger = logging.getLogger(__name__)


class StockTrackerService:
    """Inbound operations served to connected clients."""

    def __init__(
        self,
        *,
        orchestrator: HydrationOrchestrator,
        registry: AssignmentRegistry,
        quote_index: LatestQuoteIndex,
        id_generator: UniqueIdGenerator,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.registry = registry
        self.quote_index = quote_index
        self.id_generator = id_generator
        self.limiter = limiter

    def hydrate(self, cancel: threading.Event | None = None) -> HydrationResult:
        return self.orchestrator.hydrate(cancel)

    def register_client(self, client: ClientRecord) -> None:
        self.registry.register_client(client)

    def admit_client(self, *, host_name: str = "", client_ip: str = "", client_version: str = "") -> ClientRecord:
        client = ClientRecord(
            host_id=self.id_generator.next_id(),
            host_name=host_name,
            client_ip=client_ip,
            client_version=client_version,
        )
        self.registry.register_client(client)
        return client

    def release_client(self, host_id: int) -> SymbolRecord | None:
        return self.registry.release(host_id)

    def assign_symbol(self, host_id: int) -> SymbolRecord:
        return self.registry.assign_symbol(host_id)

    def get_latest_quote(self, symbol: str) -> SymbolRecord | None:
        return self.quote_index.get(symbol)

    def metrics(self) -> dict:
        out = {
            "hydration": self.orchestrator.metrics(),
            "registry": self.registry.metrics(),
            "quotes_indexed": len(self.quote_index),
        }
        if self.limiter is not None:
            out["rate_limiter"] = self.limiter.metrics()
        return out


def build_tracker(settings: Settings, *, redis_client=None, session=None) -> StockTrackerService:
    pool = SymbolPool()
    quote_index = LatestQuoteIndex()
    limiter = RateLimiter(
        permit_limit=settings.FINNHUB_RATE_PER_MINUTE,
        window_sec=60.0,
        queue_limit=settings.FINNHUB_QUEUE_LIMIT,
    )
    orchestrator = HydrationOrchestrator(
        store=SymbolStore(
            redis_client,
            url=settings.REDIS_URL,
            key=settings.SYMBOL_CACHE_KEY,
            ttl_sec=settings.SYMBOL_CACHE_TTL_SEC,
        ),
        directory=SymbolDirectoryFetcher(session=session),
        quote_client=FinnhubQuoteClient(settings.FINNHUB_TOKEN, limiter=limiter, session=session),
        pool=pool,
        quote_index=quote_index,
        max_items=settings.SYMBOL_MAX_ITEMS,
    )
    logger.info(
        "[TRACKER][build] rate_per_minute=%s machine_id=%s cache_key=%s",
        settings.FINNHUB_RATE_PER_MINUTE,
        settings.MACHINE_ID,
        settings.SYMBOL_CACHE_KEY,
    )
    return StockTrackerService(
        orchestrator=orchestrator,
        registry=AssignmentRegistry(pool),
        quote_index=quote_index,
        id_generator=UniqueIdGenerator(settings.MACHINE_ID),
        limiter=limiter,
    )
