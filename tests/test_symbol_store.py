import json
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import redis

from stock_tracker.errors import CacheReadError, CacheWriteError
from stock_tracker.integrations.symbol_store import SymbolStore, decode_records, encode_records
from stock_tracker.schemas.symbol import SymbolRecord, symbol_id


def _record(symbol: str, price: str = "10.5") -> SymbolRecord:
    return SymbolRecord(
        id=symbol_id(symbol),
        symbol=symbol,
        display_name=f"{symbol} Inc.",
        last_price=Decimal(price),
        market_time=datetime(2026, 10, 16, 20, 0, tzinfo=timezone.utc),
        volume=1234.0,
    )


class TestSymbolStore(unittest.TestCase):
    def test_absent_key_is_miss(self):
        client = MagicMock()
        client.get.return_value = None

        self.assertIsNone(SymbolStore(client).load())
        client.get.assert_called_once_with("symbols:v1")

    def test_empty_value_and_empty_array_are_misses(self):
        client = MagicMock()
        store = SymbolStore(client)
        for raw in ("", "   ", "[]"):
            client.get.return_value = raw
            self.assertIsNone(store.load())

    def test_malformed_values_raise_cache_read_error(self):
        client = MagicMock()
        store = SymbolStore(client)
        for raw in ("{not json", '{"symbol": "AAPL"}'):
            client.get.return_value = raw
            with self.assertRaises(CacheReadError):
                store.load()

    def test_redis_failure_is_cache_read_error(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")

        with self.assertRaises(CacheReadError):
            SymbolStore(client).load()

    def test_records_missing_optional_fields_get_defaults(self):
        records = decode_records(json.dumps([{"symbol": "aapl", "last_price": "1.25"}, {"display_name": "no symbol"}]))

        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].symbol, "AAPL")
        self.assertEqual(records[0].display_name, "")
        self.assertEqual(records[0].volume, 0.0)
        self.assertEqual(records[0].last_price, Decimal("1.25"))
        self.assertEqual(records[0].id, symbol_id("AAPL"))

    def test_stored_id_is_rederived_from_symbol(self):
        records = decode_records(json.dumps([{"id": 42, "symbol": "MSFT", "display_name": None, "volume": None}]))

        self.assertEqual(records[0].id, symbol_id("MSFT"))
        self.assertEqual(records[0].display_name, "")
        self.assertEqual(records[0].volume, 0.0)

    def test_save_writes_json_with_ttl(self):
        client = MagicMock()
        store = SymbolStore(client, key="symbols:v2", ttl_sec=600)
        rows = [_record("AAPL"), _record("MSFT", "300.01")]

        store.save(rows)

        key, ttl, payload = client.setex.call_args.args
        self.assertEqual((key, ttl), ("symbols:v2", 600))
        decoded = json.loads(payload)
        self.assertEqual([r["symbol"] for r in decoded], ["AAPL", "MSFT"])
        self.assertEqual(decode_records(payload), rows)

    def test_save_failure_is_cache_write_error(self):
        client = MagicMock()
        client.setex.side_effect = redis.TimeoutError("slow")

        with self.assertRaises(CacheWriteError):
            SymbolStore(client).save([_record("AAPL")])

    def test_bytes_payload_is_decoded(self):
        payload = encode_records([_record("IBM")]).encode("utf-8")

        self.assertEqual(decode_records(payload)[0].symbol, "IBM")

    def test_undecodable_or_deeply_nested_values_raise_cache_read_error(self):
        client = MagicMock()
        store = SymbolStore(client)
        for raw in (b"\xff\xfe[]", "[" * 100000 + "]" * 100000):
            client.get.return_value = raw
            with self.assertRaises(CacheReadError):
                store.load()

    def test_decode_failure_inside_redis_client_is_cache_read_error(self):
        client = MagicMock()
        client.get.side_effect = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

        with self.assertRaises(CacheReadError):
            SymbolStore(client).load()


if __name__ == "__main__":
    unittest.main()
