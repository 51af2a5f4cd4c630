"""
Derived financial views over a set of already-normalized transactions.

Everything here is a pure function of its inputs except reconciliation, which
re-converts rows stored in a different currency than the one requested for
the report. Rate lookups are memoized per engine call.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Callable, Iterable, Mapping, Optional, Sequence

from fxledger.currency_conversion import RateMemo, normalize_currency
from fxledger.models import CategoryTotal, TransactionRecord, TransactionStats
from fxledger.normalizer import AmountNormalizer, FromLegacyAmount

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
SCORE_QUANT = Decimal("0.01")

REFERENCE_TIMEZONE = timezone.utc
REPORT_RESOLUTIONS = {
    "daily": "daily",
    "day": "daily",
    "weekly": "weekly",
    "week": "weekly",
    "monthly": "monthly",
    "month": "monthly",
}

UNCATEGORIZED = "Uncategorized"
UNKNOWN_VENDOR = "Unknown"


@dataclass(frozen=True)
class ReportedTransaction:
    record: TransactionRecord
    amount: Decimal
    currency: str
    reconverted: bool = False
    conversion_failed: bool = False

    @property
    def type(self) -> str:
        return self.record.type

    @property
    def category(self) -> str:
        return self.record.category or UNCATEGORIZED

    @property
    def vendor(self) -> str:
        vendor = (self.record.vendor or "").strip()
        return vendor or UNKNOWN_VENDOR

    @property
    def transaction_date(self) -> date:
        return self.record.transaction_date


@dataclass(frozen=True)
class Summary:
    total_income: Decimal
    total_expenses: Decimal
    net_amount: Decimal
    income_count: int
    expense_count: int
    transaction_count: int
    average_transaction: Decimal
    currency: Optional[str] = None


@dataclass(frozen=True)
class BreakdownEntry:
    name: str
    total: Decimal
    count: int
    average: Decimal
    percentage_of_total: Decimal


@dataclass(frozen=True)
class PeriodComparison:
    period1_total: Decimal
    period2_total: Decimal
    period1_count: int
    period2_count: int
    change_amount: Decimal
    change_percentage: Decimal
    trend: str
    currency: Optional[str] = None


@dataclass(frozen=True)
class TrendBucket:
    bucket_start: date
    bucket_end: date
    total_income: Decimal
    total_expenses: Decimal
    net_amount: Decimal
    transaction_count: int


@dataclass(frozen=True)
class SpendingTrend:
    trend: str
    change_amount: Decimal
    change_percentage: Decimal
    buckets: list[TrendBucket]


@dataclass(frozen=True)
class FinancialHealth:
    total_income: Decimal
    total_expenses: Decimal
    net_amount: Decimal
    income_count: int
    expense_count: int
    savings_rate: Decimal
    unique_categories: int
    unique_vendors: int
    category_concentration: Decimal
    vendor_concentration: Decimal
    top_category: Optional[BreakdownEntry]
    top_vendor: Optional[BreakdownEntry]
    score: Decimal
    currency: Optional[str] = None


@dataclass(frozen=True)
class BudgetLine:
    category: str
    spent: Decimal
    budget: Optional[Decimal]
    remaining: Optional[Decimal]
    over_budget: bool
    percentage_used: Optional[Decimal]


class AggregationEngine:
    """Computes report views, reconciling rows into a reporting currency first.

    When ``reporting_currency`` is omitted the stored converted amounts are
    used as they are.
    """

    def __init__(self, rate_lookup: Optional[Callable[[str, str], Decimal]] = None) -> None:
        self._rate_lookup = rate_lookup

    def reconcile(
        self,
        records: Iterable[TransactionRecord],
        reporting_currency: Optional[str] = None,
        memo: Optional[RateMemo] = None,
    ) -> list[ReportedTransaction]:
        if reporting_currency is None:
            return [
                ReportedTransaction(record=record, amount=record.converted_amount, currency=record.converted_currency)
                for record in records
            ]

        target = normalize_currency(reporting_currency)
        normalizer = None
        reported: list[ReportedTransaction] = []
        for record in records:
            if record.converted_currency == target:
                reported.append(ReportedTransaction(record=record, amount=record.converted_amount, currency=target))
                continue
            if normalizer is None:
                normalizer = AmountNormalizer(memo or RateMemo(self._lookup))
            amounts = normalizer.normalize(
                FromLegacyAmount(amount=record.original_amount, currency=record.original_currency),
                target,
            )
            if amounts.conversion_failed:
                logger.warning(
                    "Transaction left in its original currency for report",
                    extra={
                        "transaction_id": record.id,
                        "original_currency": record.original_currency,
                        "reporting_currency": target,
                        "action": "report_reconversion_failed",
                        "component": "AggregationEngine",
                    },
                )
            reported.append(
                ReportedTransaction(
                    record=record,
                    amount=amounts.converted_amount,
                    currency=amounts.converted_currency,
                    reconverted=True,
                    conversion_failed=amounts.conversion_failed,
                )
            )
        return reported

    def summary(self, records: Iterable[TransactionRecord], reporting_currency: Optional[str] = None) -> Summary:
        return summarize(self.reconcile(records, reporting_currency), currency=reporting_currency)

    def category_breakdown(
        self,
        records: Iterable[TransactionRecord],
        reporting_currency: Optional[str] = None,
        *,
        transaction_type: Optional[str] = "expense",
        limit: Optional[int] = None,
    ) -> list[BreakdownEntry]:
        reported = self.reconcile(records, reporting_currency)
        return breakdown(reported, key="category", transaction_type=transaction_type, limit=limit)

    def vendor_breakdown(
        self,
        records: Iterable[TransactionRecord],
        reporting_currency: Optional[str] = None,
        *,
        transaction_type: Optional[str] = "expense",
        limit: Optional[int] = None,
    ) -> list[BreakdownEntry]:
        reported = self.reconcile(records, reporting_currency)
        return breakdown(reported, key="vendor", transaction_type=transaction_type, limit=limit)

    def compare_periods(
        self,
        period1_records: Iterable[TransactionRecord],
        period2_records: Iterable[TransactionRecord],
        reporting_currency: Optional[str] = None,
    ) -> PeriodComparison:
        memo = RateMemo(self._lookup)
        period1 = self.reconcile(period1_records, reporting_currency, memo=memo)
        period2 = self.reconcile(period2_records, reporting_currency, memo=memo)
        return compare_periods(period1, period2, currency=reporting_currency)

    def trends(
        self,
        records: Iterable[TransactionRecord],
        resolution: str = "monthly",
        reporting_currency: Optional[str] = None,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[TrendBucket]:
        return bucket_trends(self.reconcile(records, reporting_currency), resolution, start=start, end=end)

    def spending_trend(
        self,
        records: Iterable[TransactionRecord],
        resolution: str = "monthly",
        reporting_currency: Optional[str] = None,
    ) -> SpendingTrend:
        expenses = [item for item in self.reconcile(records, reporting_currency) if item.type == "expense"]
        return spending_trend(bucket_trends(expenses, resolution))

    def financial_health(
        self, records: Iterable[TransactionRecord], reporting_currency: Optional[str] = None
    ) -> FinancialHealth:
        return financial_health(self.reconcile(records, reporting_currency), currency=reporting_currency)

    def budget(
        self,
        records: Iterable[TransactionRecord],
        limits: Mapping[str, Decimal],
        reporting_currency: Optional[str] = None,
    ) -> list[BudgetLine]:
        return analyze_budget(self.reconcile(records, reporting_currency), limits)

    def stats(self, records: Iterable[TransactionRecord], reporting_currency: str) -> TransactionStats:
        reported = self.reconcile(records, reporting_currency)
        totals = summarize(reported, currency=reporting_currency)
        top = breakdown(reported, key="category", transaction_type=None, limit=10)
        return TransactionStats(
            total_income=totals.total_income,
            total_expenses=totals.total_expenses,
            net_amount=totals.net_amount,
            transaction_count=totals.transaction_count,
            average_transaction=totals.average_transaction,
            default_currency=reporting_currency,
            top_categories=[CategoryTotal(category=entry.name, amount=entry.total, count=entry.count) for entry in top],
        )

    def _lookup(self, from_currency: str, to_currency: str) -> Decimal:
        if self._rate_lookup is None:
            raise ValueError("Reporting currency differs from stored currency and no rate lookup is configured.")
        return self._rate_lookup(from_currency, to_currency)


def summarize(reported: Iterable[ReportedTransaction], currency: Optional[str] = None) -> Summary:
    total_income = ZERO
    total_expenses = ZERO
    income_count = 0
    expense_count = 0
    for item in reported:
        if item.type == "income":
            total_income += abs(item.amount)
            income_count += 1
        else:
            total_expenses += abs(item.amount)
            expense_count += 1
    count = income_count + expense_count
    average = (total_income + total_expenses) / count if count else ZERO
    return Summary(
        total_income=total_income,
        total_expenses=total_expenses,
        net_amount=total_income - total_expenses,
        income_count=income_count,
        expense_count=expense_count,
        transaction_count=count,
        average_transaction=average,
        currency=currency,
    )


def breakdown(
    reported: Iterable[ReportedTransaction],
    key: str = "category",
    transaction_type: Optional[str] = "expense",
    limit: Optional[int] = None,
) -> list[BreakdownEntry]:
    """Group by category or vendor, largest total first.

    Groups are kept in first-seen order and the sort is stable, so equal
    totals come out in the order they were first encountered.
    """
    if key not in ("category", "vendor"):
        raise ValueError("Breakdown key must be 'category' or 'vendor'.")
    totals: dict[str, Decimal] = {}
    counts: dict[str, int] = {}
    for item in reported:
        if transaction_type is not None and item.type != transaction_type:
            continue
        name = item.category if key == "category" else item.vendor
        totals[name] = totals.get(name, ZERO) + abs(item.amount)
        counts[name] = counts.get(name, 0) + 1

    grand_total = sum(totals.values(), ZERO)
    entries = [
        BreakdownEntry(
            name=name,
            total=total,
            count=counts[name],
            average=total / counts[name],
            percentage_of_total=(total / grand_total) * HUNDRED if grand_total > 0 else ZERO,
        )
        for name, total in totals.items()
    ]
    entries = sorted(entries, key=lambda entry: entry.total, reverse=True)
    if limit is not None:
        entries = entries[: max(limit, 0)]
    return entries


def compare_periods(
    period1: Iterable[ReportedTransaction],
    period2: Iterable[ReportedTransaction],
    currency: Optional[str] = None,
) -> PeriodComparison:
    """Compare expense totals; ``period1`` is the baseline."""
    first = summarize(period1)
    second = summarize(period2)
    change = second.total_expenses - first.total_expenses
    return PeriodComparison(
        period1_total=first.total_expenses,
        period2_total=second.total_expenses,
        period1_count=first.expense_count,
        period2_count=second.expense_count,
        change_amount=change,
        change_percentage=percentage_change(first.total_expenses, change),
        trend=classify_change(change),
        currency=currency,
    )


def percentage_change(baseline: Decimal, change: Decimal) -> Decimal:
    if baseline == 0:
        return ZERO
    return (change / abs(baseline)) * HUNDRED


def classify_change(change: Decimal) -> str:
    if change > 0:
        return "increasing"
    if change < 0:
        return "decreasing"
    return "stable"


def normalize_resolution(value: str) -> str:
    try:
        return REPORT_RESOLUTIONS[value.strip().lower()]
    except KeyError as exc:
        raise ValueError("Invalid resolution.") from exc


def reference_date(value: date | datetime) -> date:
    """Calendar date in the reference timezone; naive datetimes are taken as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(REFERENCE_TIMEZONE).date()
    return value


def get_bucket_start(value: date | datetime, resolution: str) -> date:
    day = reference_date(value)
    if resolution == "weekly":
        return day - timedelta(days=day.weekday())
    if resolution == "monthly":
        return day.replace(day=1)
    return day


def get_bucket_end(bucket_start: date, resolution: str) -> date:
    """Exclusive end of the bucket starting at ``bucket_start``."""
    if resolution == "weekly":
        return bucket_start + timedelta(days=7)
    if resolution == "monthly":
        if bucket_start.month == 12:
            return date(bucket_start.year + 1, 1, 1)
        return date(bucket_start.year, bucket_start.month + 1, 1)
    return bucket_start + timedelta(days=1)


def bucket_trends(
    reported: Iterable[ReportedTransaction],
    resolution: str = "monthly",
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> list[TrendBucket]:
    """Group into ``[bucket_start, bucket_end)`` buckets, oldest first.

    With both ``start`` and ``end`` given, rows outside the inclusive range are
    dropped and empty buckets inside it are emitted with zero totals.
    """
    normalized = normalize_resolution(resolution)
    if start is not None and end is not None and start > end:
        raise ValueError("Start date must be on or before end date.")

    income: dict[date, Decimal] = {}
    expenses: dict[date, Decimal] = {}
    counts: dict[date, int] = {}
    for item in reported:
        day = reference_date(item.transaction_date)
        if start is not None and day < start:
            continue
        if end is not None and day > end:
            continue
        key = get_bucket_start(day, normalized)
        counts[key] = counts.get(key, 0) + 1
        income.setdefault(key, ZERO)
        expenses.setdefault(key, ZERO)
        if item.type == "income":
            income[key] += abs(item.amount)
        else:
            expenses[key] += abs(item.amount)

    keys = set(counts)
    if start is not None and end is not None:
        cursor = get_bucket_start(start, normalized)
        while cursor <= end:
            keys.add(cursor)
            cursor = get_bucket_end(cursor, normalized)

    buckets = []
    for key in sorted(keys):
        total_income = income.get(key, ZERO)
        total_expenses = expenses.get(key, ZERO)
        buckets.append(
            TrendBucket(
                bucket_start=key,
                bucket_end=get_bucket_end(key, normalized),
                total_income=total_income,
                total_expenses=total_expenses,
                net_amount=total_income - total_expenses,
                transaction_count=counts.get(key, 0),
            )
        )
    return buckets


def spending_trend(buckets: Sequence[TrendBucket]) -> SpendingTrend:
    """Direction of expenses between the last two buckets."""
    if len(buckets) < 2:
        return SpendingTrend(trend="insufficient_data", change_amount=ZERO, change_percentage=ZERO, buckets=list(buckets))
    previous, recent = buckets[-2], buckets[-1]
    change = recent.total_expenses - previous.total_expenses
    return SpendingTrend(
        trend=classify_change(change),
        change_amount=change,
        change_percentage=percentage_change(previous.total_expenses, change),
        buckets=list(buckets),
    )


def concentration_index(totals: Iterable[Decimal]) -> Decimal:
    """Herfindahl index of the shares: 1 for a single group, 1/n for n equal groups, 0 when empty."""
    values = [abs(value) for value in totals]
    grand_total = sum(values, ZERO)
    if grand_total == 0:
        return ZERO
    return sum(((value / grand_total) ** 2 for value in values), ZERO)


def savings_points(savings_rate: Decimal) -> Decimal:
    if savings_rate >= 20:
        return Decimal("40")
    if savings_rate >= 10:
        return Decimal("30")
    if savings_rate >= 0:
        return Decimal("20")
    return max(ZERO, Decimal("20") + savings_rate)


def health_score(savings_rate: Decimal, category_concentration: Decimal, vendor_concentration: Decimal) -> Decimal:
    """0-40 points for savings, 0-30 each for category and vendor spread."""
    score = (
        savings_points(savings_rate)
        + Decimal("30") * (1 - category_concentration)
        + Decimal("30") * (1 - vendor_concentration)
    )
    return min(HUNDRED, max(ZERO, score)).quantize(SCORE_QUANT)


def financial_health(reported: Iterable[ReportedTransaction], currency: Optional[str] = None) -> FinancialHealth:
    items = list(reported)
    totals = summarize(items)
    savings_rate = (totals.net_amount / totals.total_income) * HUNDRED if totals.total_income > 0 else ZERO
    by_category = breakdown(items, key="category")
    by_vendor = breakdown(items, key="vendor")
    category_concentration = concentration_index(entry.total for entry in by_category)
    vendor_concentration = concentration_index(entry.total for entry in by_vendor)
    # Nothing recorded yet earns no score.
    if items:
        score = health_score(savings_rate, category_concentration, vendor_concentration)
    else:
        score = ZERO.quantize(SCORE_QUANT)
    return FinancialHealth(
        total_income=totals.total_income,
        total_expenses=totals.total_expenses,
        net_amount=totals.net_amount,
        income_count=totals.income_count,
        expense_count=totals.expense_count,
        savings_rate=savings_rate,
        unique_categories=len(by_category),
        unique_vendors=len(by_vendor),
        category_concentration=category_concentration,
        vendor_concentration=vendor_concentration,
        top_category=by_category[0] if by_category else None,
        top_vendor=by_vendor[0] if by_vendor else None,
        score=score,
        currency=currency,
    )


def analyze_budget(reported: Iterable[ReportedTransaction], limits: Mapping[str, Decimal]) -> list[BudgetLine]:
    """Expense spend per category against optional limits.

    Categories with spending come first, largest first; budgeted categories
    with no spending follow in the order given.
    """
    budgets: dict[str, Decimal] = {}
    for category, amount in limits.items():
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        if value <= ZERO:
            raise ValueError("Budget amount must be greater than zero.")
        budgets[category.strip().lower()] = value

    spent = breakdown(reported, key="category")
    seen = set()
    lines = []
    for entry in spent:
        seen.add(entry.name.lower())
        lines.append(_budget_line(entry.name, entry.total, budgets.get(entry.name.lower())))
    for category in limits:
        if category.strip().lower() not in seen:
            lines.append(_budget_line(category.strip(), ZERO, budgets[category.strip().lower()]))
    return lines


def _budget_line(category: str, spent: Decimal, budget: Optional[Decimal]) -> BudgetLine:
    if budget is None:
        return BudgetLine(category=category, spent=spent, budget=None, remaining=None, over_budget=False, percentage_used=None)
    return BudgetLine(
        category=category,
        spent=spent,
        budget=budget,
        remaining=budget - spent,
        over_budget=spent > budget,
        percentage_used=(spent / budget) * HUNDRED,
    )
