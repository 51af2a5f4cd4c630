from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import json
import logging
import threading
import time
from typing import Callable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

logger = logging.getLogger(__name__)

ONE = Decimal("1")

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "CHF": Decimal("0.88"),
    "CNY": Decimal("7.24"),
    "SAR": Decimal("3.75"),
    "AED": Decimal("3.6725"),
}


class RateProviderError(RuntimeError):
    """Raised when the upstream rate provider cannot deliver a rate table."""


class UnsupportedCurrencyError(ValueError):
    """Raised when the requested target currency is absent from the rate table."""

    def __init__(self, currency: str, base_currency: str | None = None) -> None:
        self.currency = currency
        self.base_currency = base_currency
        super().__init__(f"Unsupported currency: {currency}")


class RateProvider(Protocol):
    def fetch(self, base_currency: str) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD; tables for other bases
    are derived through USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        table = {normalize_currency(code): _coerce_rate(value) for code, value in (self.rates or DEFAULT_RATES).items()}
        object.__setattr__(self, "rates", table)

    def fetch(self, base_currency: str) -> Mapping[str, Decimal]:
        base = normalize_currency(base_currency)
        try:
            base_rate = self.rates[base]
        except KeyError as exc:
            raise UnsupportedCurrencyError(base) from exc
        return {code: rate / base_rate for code, rate in self.rates.items()}


@dataclass(frozen=True)
class ExchangeRateApiProvider:
    base_url: str = "https://api.exchangerate-api.com/v4/latest"
    timeout_seconds: float = 8

    def fetch(self, base_currency: str) -> Mapping[str, Decimal]:
        base = normalize_currency(base_currency)
        url = f"{self.base_url.rstrip('/')}/{base}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            raise RateProviderError(f"Exchange rate API unavailable for base {base}") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderError("Exchange rate API response missing rates")

        try:
            parsed = {normalize_currency(code): _coerce_rate(value) for code, value in rates.items()}
        except (ValueError, ArithmeticError) as exc:
            raise RateProviderError("Exchange rate API returned malformed rates") from exc
        parsed[base] = ONE
        return parsed


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    base_currency: str
    rates: Mapping[str, Decimal]
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.fetched_at < ttl_seconds


@dataclass
class RateCache:
    """Process-wide exchange rate cache holding one base currency at a time.

    A request for a different base, or for an expired snapshot, replaces the
    whole table with a fresh fetch for that base.
    """

    provider: RateProvider
    ttl_seconds: float = 60 * 60
    clock: Callable[[], float] = time.monotonic
    _snapshot: ExchangeRateSnapshot | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return ONE

        snapshot = self._get_snapshot(source)
        try:
            return snapshot.rates[target]
        except KeyError as exc:
            logger.error(
                "Currency missing from rate table",
                extra={
                    "base_currency": source,
                    "currency": target,
                    "action": "exchange_rate_unsupported",
                    "component": "RateCache",
                },
            )
            raise UnsupportedCurrencyError(target, base_currency=source) from exc

    def supported_currencies(self, base_currency: str = "USD") -> list[str]:
        snapshot = self._get_snapshot(normalize_currency(base_currency))
        return sorted(snapshot.rates)

    def snapshot(self) -> ExchangeRateSnapshot | None:
        with self._lock:
            return self._snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None

    def _get_snapshot(self, base_currency: str) -> ExchangeRateSnapshot:
        now = self.clock()
        with self._lock:
            cached = self._snapshot
            if (
                cached is not None
                and cached.base_currency == base_currency
                and cached.is_fresh(now, self.ttl_seconds)
            ):
                logger.debug(
                    "Exchange rate cache hit",
                    extra={"base_currency": base_currency, "action": "exchange_rate_cache_hit", "component": "RateCache"},
                )
                return cached

            logger.info(
                "Refreshing exchange rate table",
                extra={
                    "base_currency": base_currency,
                    "previous_base_currency": cached.base_currency if cached else None,
                    "action": "exchange_rate_refresh",
                    "component": "RateCache",
                },
            )
            try:
                rates = self.provider.fetch(base_currency)
            except RateProviderError:
                logger.warning(
                    "Exchange rate provider failed",
                    extra={"base_currency": base_currency, "action": "exchange_rate_fetch_failed", "component": "RateCache"},
                    exc_info=True,
                )
                raise
            snapshot = ExchangeRateSnapshot(
                base_currency=base_currency,
                rates=dict(rates),
                fetched_at=now,
            )
            self._snapshot = snapshot
            return snapshot


class RateMemo:
    """Per-call memo over a rate lookup: one upstream lookup per currency pair.

    Failures are remembered too, so a failing pair is not retried row by row.
    """

    def __init__(self, rate_lookup: Callable[[str, str], Decimal]) -> None:
        self._rate_lookup = rate_lookup
        self._rates: dict[tuple[str, str], Decimal] = {}
        self._failures: dict[tuple[str, str], Exception] = {}

    def __call__(self, from_currency: str, to_currency: str) -> Decimal:
        key = (normalize_currency(from_currency), normalize_currency(to_currency))
        if key in self._rates:
            return self._rates[key]
        if key in self._failures:
            raise self._failures[key]
        try:
            rate = self._rate_lookup(*key)
        except (RateProviderError, UnsupportedCurrencyError) as exc:
            self._failures[key] = exc
            raise
        self._rates[key] = rate
        return rate

    @property
    def lookups(self) -> int:
        return len(self._rates) + len(self._failures)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_cache: RateCache,
) -> Decimal:
    """Convert a monetary amount for display.

    Unlike transaction normalization, lookup failures propagate to the caller.
    """
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    rate = rate_cache.get_exchange_rate(normalized_source, normalized_target)
    return coerced_amount * rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _coerce_rate(value: Decimal | int | float | str) -> Decimal:
    rate = coerce_amount(value)
    if not rate.is_finite() or rate <= 0:
        raise ValueError(f"Invalid exchange rate: {value}")
    return rate
