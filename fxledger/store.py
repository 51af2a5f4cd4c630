"""
Transaction persistence with owner scoping and amount normalization.

Every read and write is filtered by owner id; a transaction owned by someone
else is reported exactly like a missing one. Amounts are stored unsigned in
both the original and the owner's default currency, with direction carried by
the transaction type.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import logging
from typing import Callable, Optional, Sequence
from uuid import uuid4

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from fxledger.aggregation import AggregationEngine, PeriodComparison
from fxledger.categories import map_category_alias
from fxledger.currency_conversion import RateMemo, normalize_currency
from fxledger.models import (
    Category,
    MigrationResult,
    MigrationStatus,
    Profile,
    TransactionInput,
    TransactionRecord,
    TransactionStats,
    TransactionType,
    TransactionUpdate,
)
from fxledger.normalizer import ZERO, AmountNormalizer, FromLegacyAmount, normalize_legacy_signed
from fxledger.repositories import CategoryResolver, PersistenceError, ProfileResolver, utcnow
from fxledger.schema import categories, transactions

logger = logging.getLogger(__name__)

RateLookup = Callable[[str, str], Decimal]


class TransactionNotFound(LookupError):
    """Raised when a transaction does not exist or belongs to another user."""

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__("Transaction not found.")


class TransactionStore:
    def __init__(
        self,
        engine: Engine,
        rate_lookup: RateLookup,
        *,
        profiles: Optional[ProfileResolver] = None,
        categories: Optional[CategoryResolver] = None,
        system_default_currency: str = "USD",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.engine = engine
        self.rate_lookup = rate_lookup
        self.clock = clock or utcnow
        self.profiles = profiles or ProfileResolver(engine, clock=self.clock)
        self.categories = categories or CategoryResolver(engine)
        self.system_default_currency = normalize_currency(system_default_currency)
        self.normalizer = AmountNormalizer(rate_lookup)

    def ensure_profile(self, user_id: str) -> Profile:
        return self.profiles.ensure_exists(user_id, self.system_default_currency)

    def default_currency(self, user_id: str) -> str:
        return self.ensure_profile(user_id).default_currency

    def create(self, user_id: str, data: TransactionInput) -> TransactionRecord:
        profile = self.ensure_profile(user_id)
        transaction_type, category = self._resolve_category(user_id, data.category, data.type)
        amounts = self.normalizer.normalize(data.amount, profile.default_currency)

        now = self.clock()
        transaction_id = uuid4().hex
        values = {
            "id": transaction_id,
            "owner_id": user_id,
            "category_id": category.id,
            "type": transaction_type,
            "transaction_date": data.transaction_date or now.date(),
            "description": (data.description or "").strip(),
            "vendor": _clean_optional(data.vendor),
            "original_amount": amounts.original_amount,
            "original_currency": amounts.original_currency,
            "converted_amount": amounts.converted_amount,
            "converted_currency": amounts.converted_currency,
            "conversion_rate": amounts.conversion_rate,
            "conversion_fee": amounts.conversion_fee,
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(transactions).values(**values))
                row = conn.execute(_record_query().where(transactions.c.id == transaction_id)).mappings().first()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to create transaction",
                extra={"user_id": user_id, "action": "transaction_create_failed", "component": "TransactionStore"},
                exc_info=True,
            )
            raise PersistenceError("Failed to create transaction.") from exc
        if row is None:
            raise PersistenceError("Transaction missing after insert.")

        logger.info(
            "Created transaction",
            extra={
                "user_id": user_id,
                "transaction_id": transaction_id,
                "type": transaction_type,
                "original_currency": amounts.original_currency,
                "converted_currency": amounts.converted_currency,
                "conversion_failed": amounts.conversion_failed,
                "action": "transaction_created",
                "component": "TransactionStore",
            },
        )
        return _to_record(row)

    def create_many(self, user_id: str, inputs: Sequence[TransactionInput]) -> list[TransactionRecord]:
        """Create a batch of transactions, rejecting the whole batch if any row is invalid.

        Types and currencies are checked for every row before the first insert.
        """
        for index, data in enumerate(inputs, start=1):
            try:
                if data.type is not None:
                    TransactionType.validate(data.type)
                if isinstance(data.amount, FromLegacyAmount) and data.amount.currency:
                    normalize_currency(data.amount.currency)
            except ValueError as exc:
                raise ValueError(f"Row {index}: {exc}") from exc
        return [self.create(user_id, data) for data in inputs]

    def get(self, user_id: str, transaction_id: str) -> Optional[TransactionRecord]:
        records = self._query(
            _record_query().where(transactions.c.id == transaction_id, transactions.c.owner_id == user_id)
        )
        return records[0] if records else None

    def update(self, user_id: str, transaction_id: str, changes: TransactionUpdate) -> TransactionRecord:
        current = self.get(user_id, transaction_id)
        if current is None:
            raise TransactionNotFound(transaction_id)

        values: dict = {"updated_at": self.clock()}
        transaction_type = TransactionType.validate(changes.type) if changes.type is not None else current.type
        if changes.type is not None:
            values["type"] = transaction_type
        if changes.category is not None:
            _, category = self._resolve_category(user_id, changes.category, transaction_type)
            values["category_id"] = category.id
        if changes.description is not None:
            values["description"] = changes.description.strip()
        if changes.vendor is not None:
            values["vendor"] = _clean_optional(changes.vendor)
        if changes.transaction_date is not None:
            values["transaction_date"] = changes.transaction_date

        if changes.changes_amount:
            default_currency = self.default_currency(user_id)
            amount = changes.amount if changes.amount is not None else current.original_amount
            currency = changes.currency or current.original_currency
            amounts = self.normalizer.normalize(FromLegacyAmount(amount=amount, currency=currency), default_currency)
            values.update(
                legacy_amount=None,
                type=transaction_type,
                original_amount=amounts.original_amount,
                original_currency=amounts.original_currency,
                converted_amount=amounts.converted_amount,
                converted_currency=amounts.converted_currency,
                conversion_rate=amounts.conversion_rate,
                conversion_fee=amounts.conversion_fee,
            )
        elif current.is_legacy:
            # Legacy rows derive their type from the sign on read, so fold them first.
            values.update(
                legacy_amount=None,
                type=transaction_type,
                original_amount=current.original_amount,
                original_currency=current.original_currency,
                converted_amount=current.converted_amount,
                converted_currency=current.converted_currency,
                conversion_rate=Decimal("1"),
                conversion_fee=ZERO,
            )

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(transactions)
                    .where(transactions.c.id == transaction_id, transactions.c.owner_id == user_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise TransactionNotFound(transaction_id)
                row = conn.execute(_record_query().where(transactions.c.id == transaction_id)).mappings().first()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to update transaction",
                extra={
                    "user_id": user_id,
                    "transaction_id": transaction_id,
                    "action": "transaction_update_failed",
                    "component": "TransactionStore",
                },
                exc_info=True,
            )
            raise PersistenceError("Failed to update transaction.") from exc

        logger.info(
            "Updated transaction",
            extra={
                "user_id": user_id,
                "transaction_id": transaction_id,
                "fields": sorted(key for key in values if key != "updated_at"),
                "action": "transaction_updated",
                "component": "TransactionStore",
            },
        )
        return _to_record(row)

    def delete(self, user_id: str, transaction_id: str) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(transactions).where(
                        transactions.c.id == transaction_id,
                        transactions.c.owner_id == user_id,
                    )
                )
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to delete transaction",
                extra={
                    "user_id": user_id,
                    "transaction_id": transaction_id,
                    "action": "transaction_delete_failed",
                    "component": "TransactionStore",
                },
                exc_info=True,
            )
            raise PersistenceError("Failed to delete transaction.") from exc
        deleted = result.rowcount > 0
        if deleted:
            logger.info(
                "Deleted transaction",
                extra={
                    "user_id": user_id,
                    "transaction_id": transaction_id,
                    "action": "transaction_deleted",
                    "component": "TransactionStore",
                },
            )
        return deleted

    def list_for_user(self, user_id: str, limit: Optional[int] = 50, offset: int = 0) -> list[TransactionRecord]:
        stmt = _ordered(_record_query().where(transactions.c.owner_id == user_id))
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        return self._query(stmt)

    def find_by_date_range(self, user_id: str, start: date, end: date) -> list[TransactionRecord]:
        """Transactions dated within ``[start, end]``, newest first."""
        if start > end:
            raise ValueError("Start date must be on or before end date.")
        return self._query(
            _ordered(
                _record_query().where(
                    transactions.c.owner_id == user_id,
                    transactions.c.transaction_date >= start,
                    transactions.c.transaction_date <= end,
                )
            )
        )

    def search(self, user_id: str, query: str, limit: int = 50) -> list[TransactionRecord]:
        term = (query or "").strip()
        if not term:
            raise ValueError("Search query required.")
        stmt = _ordered(
            _record_query().where(
                transactions.c.owner_id == user_id,
                or_(
                    transactions.c.description.icontains(term, autoescape=True),
                    transactions.c.vendor.icontains(term, autoescape=True),
                    categories.c.name.icontains(term, autoescape=True),
                ),
            )
        ).limit(limit)
        return self._query(stmt)

    def records_for_period(
        self, user_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[TransactionRecord]:
        if start is not None and end is not None:
            return self.find_by_date_range(user_id, start, end)
        conditions = [transactions.c.owner_id == user_id]
        if start is not None:
            conditions.append(transactions.c.transaction_date >= start)
        if end is not None:
            conditions.append(transactions.c.transaction_date <= end)
        return self._query(_ordered(_record_query().where(*conditions)))

    def get_stats(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> TransactionStats:
        default_currency = self.default_currency(user_id)
        records = self.records_for_period(user_id, start, end)
        return AggregationEngine(self.rate_lookup).stats(records, default_currency)

    def compare_periods(
        self,
        user_id: str,
        period1_start: date,
        period1_end: date,
        period2_start: date,
        period2_end: date,
    ) -> PeriodComparison:
        default_currency = self.default_currency(user_id)
        return AggregationEngine(self.rate_lookup).compare_periods(
            self.find_by_date_range(user_id, period1_start, period1_end),
            self.find_by_date_range(user_id, period2_start, period2_end),
            default_currency,
        )

    def change_default_currency(
        self, user_id: str, currency: str, reconvert: bool = False
    ) -> Optional[MigrationResult]:
        """Switch the owner's default currency.

        Existing rows keep their stored conversion unless ``reconvert`` is set;
        reports re-convert them at read time either way.
        """
        self.ensure_profile(user_id)
        profile = self.profiles.set_default_currency(user_id, currency)
        logger.info(
            "Default currency changed",
            extra={
                "user_id": user_id,
                "default_currency": profile.default_currency,
                "reconvert": reconvert,
                "action": "default_currency_changed",
                "component": "TransactionStore",
            },
        )
        if not reconvert:
            return None
        return self.reconvert_transactions(user_id, profile.default_currency)

    def reconvert_transactions(self, user_id: str, target_currency: Optional[str] = None) -> MigrationResult:
        """Re-normalize stored rows into ``target_currency``, one row at a time.

        A row whose rate cannot be found is left untouched and reported.
        """
        target = normalize_currency(target_currency) if target_currency else self.default_currency(user_id)
        normalizer = AmountNormalizer(RateMemo(self.rate_lookup))
        result = MigrationResult()
        pending = self._query(
            _record_query().where(
                transactions.c.owner_id == user_id,
                or_(transactions.c.converted_currency != target, transactions.c.original_amount.is_(None)),
            )
        )
        for record in pending:
            amounts = normalizer.normalize(
                FromLegacyAmount(amount=record.original_amount, currency=record.original_currency),
                target,
            )
            if amounts.conversion_failed:
                result.error_count += 1
                result.errors.append(
                    f"Transaction {record.id}: no rate from {record.original_currency} to {target}"
                )
                continue
            self._write_row(
                record.id,
                type=record.type,
                legacy_amount=None,
                original_amount=amounts.original_amount,
                original_currency=amounts.original_currency,
                converted_amount=amounts.converted_amount,
                converted_currency=amounts.converted_currency,
                conversion_rate=amounts.conversion_rate,
                conversion_fee=amounts.conversion_fee,
            )
            result.migrated_count += 1

        result.success = result.error_count == 0
        logger.info(
            "Re-converted transactions",
            extra={
                "user_id": user_id,
                "target_currency": target,
                "migrated_count": result.migrated_count,
                "error_count": result.error_count,
                "action": "transactions_reconverted",
                "component": "TransactionStore",
            },
        )
        return result

    def migrate_legacy_transactions(self, user_id: Optional[str] = None) -> MigrationResult:
        """Rewrite legacy signed rows into the unsigned dual-amount format at rate 1."""
        result = MigrationResult()
        conditions = [transactions.c.original_amount.is_(None)]
        if user_id is not None:
            conditions.append(transactions.c.owner_id == user_id)
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    select(
                        transactions.c.id,
                        transactions.c.type,
                        transactions.c.legacy_amount,
                        transactions.c.original_currency,
                        transactions.c.converted_currency,
                    ).where(*conditions)
                ).mappings().all()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to load legacy transactions",
                extra={"user_id": user_id, "action": "legacy_migration_failed", "component": "TransactionStore"},
                exc_info=True,
            )
            raise PersistenceError("Failed to load legacy transactions.") from exc

        for row in rows:
            if row["legacy_amount"] is None:
                result.error_count += 1
                result.errors.append(f"Transaction {row['id']}: missing amount")
                continue
            try:
                magnitude, transaction_type = normalize_legacy_signed(row["legacy_amount"], row["type"])
                currency = normalize_currency(row["original_currency"] or row["converted_currency"])
            except (InvalidOperation, ValueError) as exc:
                result.error_count += 1
                result.errors.append(f"Transaction {row['id']}: {exc}")
                continue
            self._write_row(
                row["id"],
                type=transaction_type,
                legacy_amount=None,
                original_amount=magnitude,
                original_currency=currency,
                converted_amount=magnitude,
                converted_currency=currency,
                conversion_rate=Decimal("1"),
                conversion_fee=ZERO,
            )
            result.migrated_count += 1

        result.success = result.error_count == 0
        logger.info(
            "Migrated legacy transactions",
            extra={
                "user_id": user_id,
                "migrated_count": result.migrated_count,
                "error_count": result.error_count,
                "action": "legacy_transactions_migrated",
                "component": "TransactionStore",
            },
        )
        return result

    def migration_status(self, user_id: Optional[str] = None) -> MigrationStatus:
        owner_clause = [transactions.c.owner_id == user_id] if user_id is not None else []
        try:
            with self.engine.begin() as conn:
                total = conn.execute(
                    select(func.count()).select_from(transactions).where(*owner_clause)
                ).scalar_one()
                legacy = conn.execute(
                    select(func.count())
                    .select_from(transactions)
                    .where(transactions.c.original_amount.is_(None), *owner_clause)
                ).scalar_one()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to read migration status",
                extra={"user_id": user_id, "action": "migration_status_failed", "component": "TransactionStore"},
                exc_info=True,
            )
            raise PersistenceError("Failed to read migration status.") from exc
        return MigrationStatus(
            needs_migration=legacy > 0,
            total_transactions=total,
            migrated_transactions=total - legacy,
            legacy_transactions=legacy,
        )

    def _resolve_category(
        self, user_id: str, name: Optional[str], transaction_type: Optional[str]
    ) -> tuple[str, Category]:
        """Resolve the transaction type and category together.

        An explicit type wins; otherwise the type of an existing category with
        that name is used, falling back to expense.
        """
        if transaction_type is not None:
            resolved_type = TransactionType.validate(transaction_type)
        else:
            if name and name.strip():
                matches = self.categories.find_by_name_any_type(user_id, map_category_alias(name))
                if matches:
                    return matches[0].type, matches[0]
            resolved_type = "expense"
        category_name = map_category_alias(name, resolved_type)
        return resolved_type, self.categories.find_or_create(user_id, category_name, resolved_type)

    def _write_row(self, transaction_id: str, **values) -> None:
        values["updated_at"] = self.clock()
        try:
            with self.engine.begin() as conn:
                conn.execute(update(transactions).where(transactions.c.id == transaction_id).values(**values))
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to rewrite transaction amounts",
                extra={
                    "transaction_id": transaction_id,
                    "action": "transaction_rewrite_failed",
                    "component": "TransactionStore",
                },
                exc_info=True,
            )
            raise PersistenceError("Failed to rewrite transaction.") from exc

    def _query(self, stmt) -> list[TransactionRecord]:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            logger.error(
                "Transaction query failed",
                extra={"action": "transaction_query_failed", "component": "TransactionStore"},
                exc_info=True,
            )
            raise PersistenceError("Failed to query transactions.") from exc
        return [_to_record(row) for row in rows]


def _record_query():
    join_stmt = transactions.outerjoin(categories, transactions.c.category_id == categories.c.id)
    return select(transactions, categories.c.name.label("category_name")).select_from(join_stmt)


def _ordered(stmt):
    return stmt.order_by(
        transactions.c.transaction_date.desc(),
        transactions.c.created_at.desc(),
        transactions.c.id.desc(),
    )


def _clean_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _to_record(row) -> TransactionRecord:
    is_legacy = row["original_amount"] is None
    if is_legacy:
        magnitude, transaction_type = normalize_legacy_signed(row["legacy_amount"] or ZERO, row["type"])
        currency = row["original_currency"] or row["converted_currency"]
        original_amount = converted_amount = magnitude
        original_currency = converted_currency = currency
        conversion_rate = Decimal("1")
        conversion_fee = ZERO
    else:
        transaction_type = row["type"]
        original_amount = row["original_amount"]
        original_currency = row["original_currency"] or row["converted_currency"]
        converted_amount = row["converted_amount"] if row["converted_amount"] is not None else original_amount
        converted_currency = row["converted_currency"]
        conversion_rate = row["conversion_rate"] if row["conversion_rate"] is not None else Decimal("1")
        conversion_fee = row["conversion_fee"] if row["conversion_fee"] is not None else ZERO
    return TransactionRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        type=transaction_type,
        transaction_date=row["transaction_date"],
        original_amount=original_amount,
        original_currency=original_currency,
        converted_amount=converted_amount,
        converted_currency=converted_currency,
        conversion_rate=conversion_rate,
        conversion_fee=conversion_fee,
        category_id=row["category_id"],
        category=row["category_name"],
        description=row["description"],
        vendor=row["vendor"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        is_legacy=is_legacy,
    )
