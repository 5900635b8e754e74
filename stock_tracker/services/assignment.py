from __future__ import annotations

import logging
import threading

from stock_tracker.errors import NoSymbolsAvailableError
from stock_tracker.schemas.client import ClientRecord
from stock_tracker.schemas.symbol import SymbolRecord
from stock_tracker.services.symbol_pool import SymbolPool

logger = logging.getLogger(__name__)


class AssignmentRegistry:
    """Binds each connected client to exactly one symbol drawn from the shared pool."""

    def __init__(self, pool: SymbolPool) -> None:
        self.pool = pool
        self._clients_lock = threading.Lock()
        self._bind_lock = threading.Lock()
        self._clients: dict[int, ClientRecord] = {}
        self._assignments: dict[int, SymbolRecord] = {}
        self._metrics = {
            "assigned": 0,
            "repeat_hits": 0,
            "exhausted": 0,
            "released": 0,
        }

    def register_client(self, client: ClientRecord) -> None:
        with self._clients_lock:
            replaced = client.host_id in self._clients
            self._clients[client.host_id] = client
        logger.info("[REGISTRY][client_upsert] host_id=%s replaced=%s", client.host_id, int(replaced))

    def get_client(self, host_id: int) -> ClientRecord | None:
        with self._clients_lock:
            return self._clients.get(host_id)

    def assignment_for(self, host_id: int) -> SymbolRecord | None:
        with self._bind_lock:
            return self._assignments.get(host_id)

    def assign_symbol(self, host_id: int) -> SymbolRecord:
        with self._bind_lock:
            existing = self._assignments.get(host_id)
            if existing is not None:
                self._metrics["repeat_hits"] += 1
                return existing

            record = self.pool.pop_next()
            if record is None:
                self._metrics["exhausted"] += 1
                logger.warning("[REGISTRY][pool_empty] host_id=%s", host_id)
                raise NoSymbolsAvailableError(host_id)

            self._assignments[host_id] = record
            self._metrics["assigned"] += 1

        logger.info("[REGISTRY][assign] host_id=%s symbol=%s", host_id, record.symbol)
        return record

    def release(self, host_id: int) -> SymbolRecord | None:
        """Tear down a client session; its symbol goes back to the tail of the pool."""
        with self._clients_lock:
            self._clients.pop(host_id, None)
        with self._bind_lock:
            record = self._assignments.pop(host_id, None)
            if record is not None:
                self.pool.append(record)
                self._metrics["released"] += 1
        if record is not None:
            logger.info("[REGISTRY][release] host_id=%s symbol=%s", host_id, record.symbol)
        return record

    def metrics(self) -> dict:
        with self._clients_lock:
            clients = len(self._clients)
        with self._bind_lock:
            assignments = len(self._assignments)
            counters = dict(self._metrics)
        return {
            "clients": clients,
            "assignments": assignments,
            "pool_depth": len(self.pool),
            **counters,
        }
