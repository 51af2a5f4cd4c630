import io
import unittest
from decimal import Decimal
from unittest import mock
from urllib.error import URLError

from fxledger.currency_conversion import (
    ExchangeRateApiProvider,
    RateCache,
    RateMemo,
    RateProviderError,
    StaticRateProvider,
    UnsupportedCurrencyError,
    convert_amount,
    normalize_currency,
)


class FixedTableProvider:
    def __init__(self, tables: dict) -> None:
        self.tables = tables
        self.calls: list[str] = []

    def fetch(self, base_currency: str) -> dict:
        self.calls.append(base_currency)
        if base_currency not in self.tables:
            raise RateProviderError("Down")
        return self.tables[base_currency]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RateCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = FixedTableProvider(
            {
                "EUR": {"EUR": Decimal("1"), "USD": Decimal("1.08"), "GBP": Decimal("0.86")},
                "GBP": {"GBP": Decimal("1"), "USD": Decimal("1.27")},
            }
        )
        self.clock = FakeClock()
        self.cache = RateCache(provider=self.provider, ttl_seconds=3600, clock=self.clock)

    def test_same_currency_returns_one_without_fetch(self) -> None:
        rate = self.cache.get_exchange_rate("usd", " USD ")

        self.assertEqual(rate, Decimal("1"))
        self.assertEqual(self.provider.calls, [])

    def test_converts_eur_purchase_into_usd(self) -> None:
        amount = convert_amount(Decimal("500"), "EUR", "USD", self.cache)

        self.assertEqual(amount, Decimal("540.00"))

    def test_reuses_fresh_snapshot(self) -> None:
        self.cache.get_exchange_rate("EUR", "USD")
        self.clock.now = 3599
        self.cache.get_exchange_rate("EUR", "GBP")

        self.assertEqual(self.provider.calls, ["EUR"])

    def test_refreshes_after_ttl(self) -> None:
        self.cache.get_exchange_rate("EUR", "USD")
        self.clock.now = 3600
        self.cache.get_exchange_rate("EUR", "USD")

        self.assertEqual(self.provider.calls, ["EUR", "EUR"])

    def test_base_change_replaces_snapshot(self) -> None:
        self.cache.get_exchange_rate("EUR", "USD")
        self.assertEqual(self.cache.get_exchange_rate("GBP", "USD"), Decimal("1.27"))
        self.cache.get_exchange_rate("EUR", "USD")

        self.assertEqual(self.provider.calls, ["EUR", "GBP", "EUR"])
        self.assertEqual(self.cache.snapshot().base_currency, "EUR")

    def test_missing_target_raises_unsupported_currency(self) -> None:
        with self.assertRaises(UnsupportedCurrencyError) as ctx:
            self.cache.get_exchange_rate("EUR", "JPY")

        self.assertIsInstance(ctx.exception, ValueError)
        self.assertEqual(ctx.exception.currency, "JPY")

    def test_provider_failure_propagates(self) -> None:
        with self.assertRaises(RateProviderError):
            self.cache.get_exchange_rate("CHF", "USD")

    def test_invalidate_forces_refetch(self) -> None:
        self.cache.get_exchange_rate("EUR", "USD")
        self.cache.invalidate()
        self.cache.get_exchange_rate("EUR", "USD")

        self.assertEqual(self.provider.calls, ["EUR", "EUR"])

    def test_supported_currencies_are_sorted(self) -> None:
        self.assertEqual(self.cache.supported_currencies("EUR"), ["EUR", "GBP", "USD"])


class StaticRateProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StaticRateProvider(
            rates={
                "USD": Decimal("1"),
                "EUR": Decimal("2"),
                "JPY": Decimal("4"),
            }
        )

    def test_cross_rates_go_through_usd(self) -> None:
        cache = RateCache(provider=self.provider)

        amount = convert_amount(Decimal("10"), "EUR", "JPY", cache)

        self.assertEqual(amount, Decimal("20"))

    def test_unknown_base_raises(self) -> None:
        with self.assertRaises(UnsupportedCurrencyError):
            self.provider.fetch("CAD")

    def test_round_trip_stays_within_tolerance(self) -> None:
        cache = RateCache(provider=StaticRateProvider())

        for currency in ("EUR", "GBP", "JPY", "AED"):
            converted = convert_amount(Decimal("123.45"), "USD", currency, cache)
            back = convert_amount(converted, currency, "USD", cache)
            self.assertLess(abs(back - Decimal("123.45")), Decimal("1e-9"))


class ExchangeRateApiProviderTests(unittest.TestCase):
    def test_parses_rates_payload(self) -> None:
        payload = b'{"base": "EUR", "rates": {"USD": 1.08, "gbp": 0.86}}'
        with mock.patch("fxledger.currency_conversion.urlopen", return_value=io.BytesIO(payload)) as urlopen:
            rates = ExchangeRateApiProvider(base_url="https://rates.test/latest/").fetch("eur")

        urlopen.assert_called_once_with("https://rates.test/latest/EUR", timeout=8)
        self.assertEqual(rates["USD"], Decimal("1.08"))
        self.assertEqual(rates["GBP"], Decimal("0.86"))
        self.assertEqual(rates["EUR"], Decimal("1"))

    def test_network_failure_raises_provider_error(self) -> None:
        with mock.patch("fxledger.currency_conversion.urlopen", side_effect=URLError("down")):
            with self.assertRaises(RateProviderError):
                ExchangeRateApiProvider().fetch("USD")

    def test_missing_rates_raises_provider_error(self) -> None:
        with mock.patch("fxledger.currency_conversion.urlopen", return_value=io.BytesIO(b'{"result": "error"}')):
            with self.assertRaises(RateProviderError):
                ExchangeRateApiProvider().fetch("USD")

    def test_non_positive_rate_raises_provider_error(self) -> None:
        payload = b'{"rates": {"USD": 0}}'
        with mock.patch("fxledger.currency_conversion.urlopen", return_value=io.BytesIO(payload)):
            with self.assertRaises(RateProviderError):
                ExchangeRateApiProvider().fetch("EUR")


class RateMemoTests(unittest.TestCase):
    def test_looks_up_each_pair_once(self) -> None:
        calls = []

        def lookup(source: str, target: str) -> Decimal:
            calls.append((source, target))
            return Decimal("1.5")

        memo = RateMemo(lookup)
        memo("eur", "usd")
        memo("EUR", "USD")
        memo("GBP", "USD")

        self.assertEqual(calls, [("EUR", "USD"), ("GBP", "USD")])
        self.assertEqual(memo.lookups, 2)

    def test_remembers_failures(self) -> None:
        calls = []

        def lookup(source: str, target: str) -> Decimal:
            calls.append((source, target))
            raise RateProviderError("Down")

        memo = RateMemo(lookup)
        for _ in range(3):
            with self.assertRaises(RateProviderError):
                memo("EUR", "USD")

        self.assertEqual(len(calls), 1)


class NormalizeCurrencyTests(unittest.TestCase):
    def test_normalizes_case_and_whitespace(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")

    def test_rejects_invalid_codes(self) -> None:
        for value in ("EURO", "U1D", ""):
            with self.assertRaises(ValueError):
                normalize_currency(value)


if __name__ == "__main__":
    unittest.main()
