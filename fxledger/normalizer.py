from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Callable, Optional, Union

from fxledger.currency_conversion import (
    RateProviderError,
    UnsupportedCurrencyError,
    coerce_amount,
    normalize_currency,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")

RateLookup = Callable[[str, str], Decimal]


@dataclass(frozen=True)
class FromLegacyAmount:
    """A single user-stated amount; currency falls back to the default currency."""

    amount: Decimal
    currency: Optional[str] = None


@dataclass(frozen=True)
class FromResolvedQuadruple:
    """Both sides already resolved by the caller, e.g. an assisted parser."""

    original_amount: Decimal
    original_currency: Optional[str]
    converted_amount: Decimal
    converted_currency: Optional[str]
    conversion_rate: Optional[Decimal] = None
    conversion_fee: Optional[Decimal] = None


AmountSource = Union[FromLegacyAmount, FromResolvedQuadruple]


@dataclass(frozen=True)
class NormalizedAmounts:
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    converted_currency: str
    conversion_rate: Decimal
    conversion_fee: Decimal
    conversion_failed: bool = False


class AmountNormalizer:
    """Turns user-declared amounts into the dual original/converted representation.

    Rate lookup failures never block the caller: the amount is kept in its
    original currency at rate 1 and a warning is logged.
    """

    def __init__(self, rate_lookup: RateLookup) -> None:
        self._rate_lookup = rate_lookup

    def normalize(self, source: AmountSource, default_currency: str) -> NormalizedAmounts:
        target = normalize_currency(default_currency)
        if isinstance(source, FromResolvedQuadruple):
            return self._pass_through(source, target)
        if isinstance(source, FromLegacyAmount):
            return self._convert(source, target)
        raise TypeError(f"Unsupported amount source: {type(source).__name__}")

    def _pass_through(self, source: FromResolvedQuadruple, default_currency: str) -> NormalizedAmounts:
        original_currency = (
            normalize_currency(source.original_currency) if source.original_currency else default_currency
        )
        converted_currency = (
            normalize_currency(source.converted_currency) if source.converted_currency else default_currency
        )
        rate = coerce_amount(source.conversion_rate) if source.conversion_rate else ONE
        fee = abs(coerce_amount(source.conversion_fee)) if source.conversion_fee is not None else ZERO
        return NormalizedAmounts(
            original_amount=abs(coerce_amount(source.original_amount)),
            original_currency=original_currency,
            converted_amount=abs(coerce_amount(source.converted_amount)),
            converted_currency=converted_currency,
            conversion_rate=abs(rate),
            conversion_fee=fee,
        )

    def _convert(self, source: FromLegacyAmount, default_currency: str) -> NormalizedAmounts:
        magnitude = abs(coerce_amount(source.amount))
        original_currency = normalize_currency(source.currency) if source.currency else default_currency

        if original_currency == default_currency:
            return _unconverted(magnitude, original_currency)

        try:
            rate = self._rate_lookup(original_currency, default_currency)
        except (RateProviderError, UnsupportedCurrencyError) as exc:
            logger.warning(
                "Currency conversion failed, keeping original amount",
                extra={
                    "original_amount": str(magnitude),
                    "original_currency": original_currency,
                    "default_currency": default_currency,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                    "action": "currency_conversion_fallback",
                    "component": "AmountNormalizer",
                },
            )
            return _unconverted(magnitude, original_currency, conversion_failed=True)

        converted = magnitude * rate
        logger.debug(
            "Currency conversion completed",
            extra={
                "original_currency": original_currency,
                "default_currency": default_currency,
                "conversion_rate": str(rate),
                "action": "currency_conversion_completed",
                "component": "AmountNormalizer",
            },
        )
        return NormalizedAmounts(
            original_amount=magnitude,
            original_currency=original_currency,
            converted_amount=converted,
            converted_currency=default_currency,
            conversion_rate=rate,
            conversion_fee=ZERO,
        )


def normalize_legacy_signed(
    amount: Decimal | int | float | str, stored_type: Optional[str] = None
) -> tuple[Decimal, str]:
    """Fold a legacy signed amount into magnitude plus transaction type.

    Negative amounts are always expenses; a non-negative amount keeps the
    stored type and defaults to income.
    """
    value = coerce_amount(amount)
    if value < ZERO:
        return abs(value), "expense"
    if stored_type and stored_type.strip().lower() in ("income", "expense"):
        return value, stored_type.strip().lower()
    return value, "income"


def _unconverted(magnitude: Decimal, currency: str, conversion_failed: bool = False) -> NormalizedAmounts:
    return NormalizedAmounts(
        original_amount=magnitude,
        original_currency=currency,
        converted_amount=magnitude,
        converted_currency=currency,
        conversion_rate=ONE,
        conversion_fee=ZERO,
        conversion_failed=conversion_failed,
    )
