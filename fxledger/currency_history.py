from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from fxledger.models import TransactionRecord

ZERO = Decimal("0")


@dataclass(frozen=True)
class ConversionEntry:
    transaction_id: str
    transaction_date: date
    from_currency: str
    to_currency: str
    rate: Decimal
    amount: Decimal
    converted_amount: Decimal


@dataclass(frozen=True)
class CurrencyPair:
    from_currency: str
    to_currency: str

    @property
    def label(self) -> str:
        return f"{self.from_currency}/{self.to_currency}"


@dataclass(frozen=True)
class PairActivity:
    pair: CurrencyPair
    count: int


@dataclass(frozen=True)
class ConversionStats:
    total_conversions: int
    total_volume: Decimal
    average_rate: Decimal
    best_rate: Decimal
    worst_rate: Decimal
    most_active_pair: Optional[PairActivity]


@dataclass(frozen=True)
class CurrencyExposure:
    currency: str
    amount: Decimal


@dataclass(frozen=True)
class RatePoint:
    day: date
    rate: Decimal
    volume: Decimal


def conversion_history(records: Iterable[TransactionRecord]) -> list[ConversionEntry]:
    """Cross-currency transactions, newest first."""
    entries = [
        ConversionEntry(
            transaction_id=record.id,
            transaction_date=record.transaction_date,
            from_currency=record.original_currency,
            to_currency=record.converted_currency,
            rate=record.conversion_rate,
            amount=record.original_amount,
            converted_amount=record.converted_amount,
        )
        for record in records
        if record.original_currency != record.converted_currency and record.original_amount
    ]
    return sorted(entries, key=lambda entry: entry.transaction_date, reverse=True)


def currency_pairs(history: Iterable[ConversionEntry]) -> list[CurrencyPair]:
    seen: dict[tuple[str, str], CurrencyPair] = {}
    for entry in history:
        key = (entry.from_currency, entry.to_currency)
        if key not in seen:
            seen[key] = CurrencyPair(from_currency=entry.from_currency, to_currency=entry.to_currency)
    return list(seen.values())


def conversion_stats(history: Iterable[ConversionEntry]) -> ConversionStats:
    entries = list(history)
    if not entries:
        return ConversionStats(
            total_conversions=0,
            total_volume=ZERO,
            average_rate=ZERO,
            best_rate=ZERO,
            worst_rate=ZERO,
            most_active_pair=None,
        )

    rates = [entry.rate for entry in entries]
    counts: dict[CurrencyPair, int] = {}
    for entry in entries:
        pair = CurrencyPair(from_currency=entry.from_currency, to_currency=entry.to_currency)
        counts[pair] = counts.get(pair, 0) + 1
    # max keeps the first pair seen on ties
    busiest = max(counts.items(), key=lambda item: item[1])

    return ConversionStats(
        total_conversions=len(entries),
        total_volume=sum((abs(entry.amount) for entry in entries), ZERO),
        average_rate=sum(rates, ZERO) / len(rates),
        best_rate=max(rates),
        worst_rate=min(rates),
        most_active_pair=PairActivity(pair=busiest[0], count=busiest[1]),
    )


def currency_exposure(records: Iterable[TransactionRecord]) -> list[CurrencyExposure]:
    """Net position per original currency, largest absolute position first.

    Currencies that net to zero are left out.
    """
    totals: dict[str, Decimal] = {}
    for record in records:
        amount = abs(record.original_amount)
        signed = amount if record.type == "income" else -amount
        totals[record.original_currency] = totals.get(record.original_currency, ZERO) + signed
    exposure = [CurrencyExposure(currency=code, amount=amount) for code, amount in totals.items() if amount != 0]
    return sorted(exposure, key=lambda item: abs(item.amount), reverse=True)


def exchange_rate_series(
    history: Iterable[ConversionEntry],
    from_currency: str,
    to_currency: str,
    days: int = 30,
) -> list[RatePoint]:
    """Average rate and volume per day for one pair, keeping the last ``days`` days with data."""
    if days <= 0:
        raise ValueError("days must be greater than zero.")
    rate_totals: dict[date, Decimal] = {}
    volumes: dict[date, Decimal] = {}
    counts: dict[date, int] = {}
    for entry in history:
        if entry.from_currency != from_currency or entry.to_currency != to_currency:
            continue
        day = entry.transaction_date
        rate_totals[day] = rate_totals.get(day, ZERO) + entry.rate
        volumes[day] = volumes.get(day, ZERO) + abs(entry.amount)
        counts[day] = counts.get(day, 0) + 1

    series = [
        RatePoint(day=day, rate=rate_totals[day] / counts[day], volume=volumes[day])
        for day in sorted(rate_totals)
    ]
    return series[-days:]
