import json
import threading
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from email.utils import format_datetime
from unittest.mock import MagicMock

import requests

from stock_tracker.errors import (
    ConfigurationError,
    MalformedResponseError,
    OperationCancelledError,
    QuoteFetchError,
)
from stock_tracker.integrations.finnhub_rest import FinnhubQuoteClient, parse_quote, parse_retry_after
from stock_tracker.services.rate_limiter import RateLimiter
from stock_tracker.services.retry import jittered_backoff


def _response(status_code: int, payload=None, headers=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    return response


class TestFinnhubQuoteClient(unittest.TestCase):
    def _client(self, session, sleeps=None, **kwargs):
        sleeps = sleeps if sleeps is not None else []
        return FinnhubQuoteClient(
            "tok-123",
            limiter=RateLimiter(permit_limit=100),
            session=session,
            base_url="https://example.test/api/v1",
            sleep_fn=lambda delay, _cancel: sleeps.append(delay),
            backoff_fn=lambda attempt: float(attempt + 1),
            **kwargs,
        )

    def test_missing_token_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            FinnhubQuoteClient("", limiter=RateLimiter())

    def test_get_quote_parses_fields_and_sends_token(self):
        session = MagicMock()
        session.get.return_value = _response(200, {"c": 189.84, "t": 1700000000, "v": 5123.5})
        client = self._client(session)

        quote = client.get_quote("AAPL")

        self.assertEqual(quote.price, Decimal("189.84"))
        self.assertEqual(quote.market_time, datetime.fromtimestamp(1700000000, tz=timezone.utc))
        self.assertEqual(quote.volume, 5123.5)
        self.assertIsNone(quote.name)

        kwargs = session.get.call_args.kwargs
        self.assertEqual(session.get.call_args.args[0], "https://example.test/api/v1/quote")
        self.assertEqual(kwargs["params"], {"symbol": "AAPL"})
        self.assertEqual(kwargs["headers"]["X-Finnhub-Token"], "tok-123")
        self.assertEqual(kwargs["timeout"], 10.0)

    def test_missing_fields_default_to_zero_and_now(self):
        before = datetime.now(timezone.utc)
        quote = parse_quote({})

        self.assertEqual(quote.price, Decimal("0"))
        self.assertEqual(quote.volume, 0.0)
        self.assertGreaterEqual(quote.market_time, before)

    def test_non_finite_numbers_default_to_zero(self):
        session = MagicMock()
        session.get.return_value = _response(200, json.loads('{"c": 1e400, "t": 1700000000, "v": NaN}'))

        quote = self._client(session).get_quote("AAPL")

        self.assertEqual(quote.price, Decimal("0"))
        self.assertEqual(quote.volume, 0.0)
        self.assertEqual(quote.market_time, datetime.fromtimestamp(1700000000, tz=timezone.utc))

        quote = parse_quote({"c": "NaN", "v": 10**400})
        self.assertEqual(quote.price, Decimal("0"))
        self.assertEqual(quote.volume, 0.0)
        self.assertEqual(parse_quote({"c": float("-inf"), "v": float("inf")}).price, Decimal("0"))

    def test_non_object_payload_is_malformed(self):
        with self.assertRaises(MalformedResponseError):
            parse_quote(["not", "a", "dict"])

    def test_invalid_json_body_is_malformed_and_not_retried(self):
        session = MagicMock()
        response = _response(200)
        response.json.side_effect = ValueError("bad json")
        session.get.return_value = response
        client = self._client(session)

        with self.assertRaises(MalformedResponseError):
            client.get_quote("AAPL")
        self.assertEqual(session.get.call_count, 1)

    def test_429_honours_retry_after_seconds(self):
        session = MagicMock()
        session.get.side_effect = [
            _response(429, headers={"Retry-After": "7"}),
            _response(200, {"c": 1, "t": 1700000000, "v": 2}),
        ]
        sleeps = []
        client = self._client(session, sleeps)

        quote = client.get_quote("MSFT")

        self.assertEqual(quote.price, Decimal("1"))
        self.assertEqual(sleeps, [7.0])

    def test_429_without_header_uses_computed_backoff(self):
        session = MagicMock()
        session.get.side_effect = [
            _response(429),
            _response(429),
            _response(200, {"c": 3}),
        ]
        sleeps = []
        client = self._client(session, sleeps)

        client.get_quote("MSFT")

        self.assertEqual(sleeps, [1.0, 2.0])

    def test_5xx_and_network_errors_are_retried(self):
        session = MagicMock()
        session.get.side_effect = [
            _response(502),
            requests.ConnectionError("reset"),
            _response(200, {"c": 10}),
        ]
        sleeps = []
        client = self._client(session, sleeps)

        quote = client.get_quote("IBM")

        self.assertEqual(quote.price, Decimal("10"))
        self.assertEqual(session.get.call_count, 3)
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_other_4xx_fails_immediately(self):
        session = MagicMock()
        session.get.return_value = _response(403)
        sleeps = []
        client = self._client(session, sleeps)

        with self.assertRaises(QuoteFetchError) as ctx:
            client.get_quote("IBM")

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.symbol, "IBM")
        self.assertEqual(session.get.call_count, 1)
        self.assertEqual(sleeps, [])

    def test_exhausted_retries_name_the_symbol(self):
        session = MagicMock()
        session.get.return_value = _response(500)
        sleeps = []
        client = self._client(session, sleeps)

        with self.assertRaises(QuoteFetchError) as ctx:
            client.get_quote("NVDA")

        self.assertIn("NVDA", str(ctx.exception))
        self.assertEqual(session.get.call_count, 5)
        self.assertEqual(sleeps, [1.0, 2.0, 3.0, 4.0])

    def test_every_attempt_takes_a_limiter_permit(self):
        session = MagicMock()
        session.get.side_effect = [_response(503), _response(200, {"c": 1})]
        limiter = RateLimiter(permit_limit=100)
        client = FinnhubQuoteClient(
            "tok", limiter=limiter, session=session, sleep_fn=lambda _d, _c: None
        )

        client.get_quote("AAPL")

        metrics = limiter.metrics()
        self.assertEqual(metrics["admitted"], 2)
        self.assertEqual(metrics["in_flight"], 0)

    def test_cancel_during_backoff_releases_lease(self):
        cancel = threading.Event()
        limiter = RateLimiter(permit_limit=100)

        def throttled(*_args, **_kwargs):
            cancel.set()
            return _response(429, headers={"Retry-After": "30"})

        session = MagicMock()
        session.get.side_effect = throttled
        client = FinnhubQuoteClient("tok", limiter=limiter, session=session)

        with self.assertRaises(OperationCancelledError):
            client.get_quote("AAPL", cancel)

        self.assertEqual(session.get.call_count, 1)
        self.assertEqual(limiter.metrics()["in_flight"], 0)


class TestRetryAfterAndBackoff(unittest.TestCase):
    def test_delta_seconds(self):
        self.assertEqual(parse_retry_after("12"), 12.0)

    def test_http_date_converted_to_delta(self):
        now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=20), usegmt=True)

        self.assertAlmostEqual(parse_retry_after(header, now=now), 20.0, places=3)

    def test_past_or_invalid_values_are_ignored(self):
        now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        past = format_datetime(now - timedelta(seconds=20), usegmt=True)

        self.assertIsNone(parse_retry_after(past, now=now))
        self.assertIsNone(parse_retry_after("0"))
        self.assertIsNone(parse_retry_after("soon"))
        self.assertIsNone(parse_retry_after(None))
        self.assertIsNone(parse_retry_after("inf"))
        self.assertIsNone(parse_retry_after("NaN"))

    def test_jittered_backoff_bounds(self):
        for attempt in range(8):
            base = min(30.0, 0.5 * 2**attempt)
            for _ in range(50):
                delay = jittered_backoff(attempt)
                self.assertGreaterEqual(delay, base / 2)
                self.assertLessEqual(delay, base * 1.5)


if __name__ == "__main__":
    unittest.main()
