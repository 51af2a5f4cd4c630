import unittest
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import insert

from fxledger.currency_conversion import UnsupportedCurrencyError
from fxledger.models import TransactionInput, TransactionUpdate
from fxledger.normalizer import FromLegacyAmount, FromResolvedQuadruple
from fxledger.repositories import CategoryResolver
from fxledger.schema import build_engine, init_db, transactions
from fxledger.store import TransactionNotFound, TransactionStore

RATES = {
    ("EUR", "USD"): Decimal("1.08"),
    ("GBP", "USD"): Decimal("1.27"),
    ("USD", "EUR"): Decimal("0.5"),
}


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def fixed_lookup(source: str, target: str) -> Decimal:
    try:
        return RATES[(source, target)]
    except KeyError as exc:
        raise UnsupportedCurrencyError(target, base_currency=source) from exc


class TransactionStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_engine("sqlite://")
        init_db(self.engine)
        CategoryResolver(self.engine).ensure_global_defaults()
        self.store = TransactionStore(self.engine, fixed_lookup, clock=TickingClock())

    def tearDown(self) -> None:
        self.engine.dispose()

    def add(self, amount: str, currency: str | None = None, user_id: str = "user-1", **fields):
        return self.store.create(
            user_id,
            TransactionInput(amount=FromLegacyAmount(amount=Decimal(amount), currency=currency), **fields),
        )


class CreateTests(TransactionStoreTestCase):
    def test_creates_profile_with_default_categories(self) -> None:
        profile = self.store.ensure_profile("user-1")

        self.assertEqual(profile.default_currency, "USD")
        names = {category.name for category in self.store.categories.find_for_user("user-1")}
        self.assertIn("Food & Dining", names)
        self.assertIn("Salary", names)

    def test_foreign_expense_is_converted_into_default_currency(self) -> None:
        record = self.add("500", "EUR", description="Hotel", category="Travel", type="expense")

        self.assertEqual(record.original_amount, Decimal("500"))
        self.assertEqual(record.original_currency, "EUR")
        self.assertEqual(record.converted_amount, Decimal("540"))
        self.assertEqual(record.converted_currency, "USD")
        self.assertEqual(record.conversion_rate, Decimal("1.08"))
        self.assertEqual(record.category, "Travel")
        self.assertEqual(len(record.id), 32)

    def test_foreign_income_is_converted(self) -> None:
        record = self.add("100", "GBP", description="Refund", type="income")

        self.assertEqual(record.type, "income")
        self.assertEqual(record.converted_amount, Decimal("127"))
        self.assertEqual(record.category, "Other Income")

    def test_foreign_expense_is_deducted_from_income(self) -> None:
        self.add("500", description="Consulting", type="income")
        record = self.add("100", "GBP", description="Books", type="expense")

        stats = self.store.get_stats("user-1")

        self.assertEqual(record.converted_amount, Decimal("127"))
        self.assertEqual(stats.total_expenses, Decimal("127"))
        self.assertEqual(stats.net_amount, Decimal("373"))

    def test_missing_rate_stores_original_currency(self) -> None:
        with self.assertLogs("fxledger.normalizer", level="WARNING"):
            record = self.add("300", "JPY", description="Ramen")

        self.assertEqual(record.converted_amount, Decimal("300"))
        self.assertEqual(record.converted_currency, "JPY")
        self.assertEqual(record.conversion_rate, Decimal("1"))

    def test_type_follows_category_when_not_given(self) -> None:
        record = self.add("2500", description="May pay", category="salary")

        self.assertEqual(record.type, "income")
        self.assertEqual(record.category, "Salary")

    def test_category_alias_maps_to_default(self) -> None:
        record = self.add("12", description="Weekly shop", category="Groceries", type="expense")

        self.assertEqual(record.category, "Food & Dining")

    def test_unknown_category_creates_user_category(self) -> None:
        record = self.add("9", description="Chew toy", category="Pets", type="expense")

        self.assertEqual(record.category, "Pets")
        names = [category.name for category in self.store.categories.find_for_user("user-1")]
        self.assertIn("Pets", names)

    def test_defaults_to_expense(self) -> None:
        record = self.add("4", description="Snack")

        self.assertEqual(record.type, "expense")
        self.assertEqual(record.category, "Other Expenses")

    def test_invalid_type_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.add("4", description="Snack", type="transfer")

    def test_resolved_amounts_are_stored_as_given(self) -> None:
        record = self.store.create(
            "user-1",
            TransactionInput(
                amount=FromResolvedQuadruple(
                    original_amount=Decimal("80"),
                    original_currency="GBP",
                    converted_amount=Decimal("101"),
                    converted_currency="USD",
                    conversion_rate=Decimal("1.2625"),
                    conversion_fee=Decimal("0.5"),
                ),
                description="Train",
            ),
        )

        self.assertEqual(record.converted_amount, Decimal("101"))
        self.assertEqual(record.conversion_fee, Decimal("0.5"))


    def test_batch_with_invalid_type_stores_nothing(self) -> None:
        inputs = [
            TransactionInput(amount=FromLegacyAmount(amount=Decimal("12")), description="Lunch", type="expense"),
            TransactionInput(amount=FromLegacyAmount(amount=Decimal("30")), description="Gift", type="bogus"),
        ]

        with self.assertRaises(ValueError) as raised:
            self.store.create_many("user-1", inputs)

        self.assertIn("Row 2", str(raised.exception))
        self.assertEqual(self.store.list_for_user("user-1"), [])

    def test_batch_creates_every_row(self) -> None:
        records = self.store.create_many(
            "user-1",
            [
                TransactionInput(amount=FromLegacyAmount(amount=Decimal("12")), description="Lunch"),
                TransactionInput(amount=FromLegacyAmount(amount=Decimal("30"), currency="EUR"), description="Gift"),
            ],
        )

        self.assertEqual([record.converted_amount for record in records], [Decimal("12"), Decimal("32.4")])
        self.assertEqual(len(self.store.list_for_user("user-1")), 2)



class OwnershipTests(TransactionStoreTestCase):
    def test_other_users_cannot_see_or_change_transaction(self) -> None:
        record = self.add("10", description="Lunch")

        self.assertIsNone(self.store.get("user-2", record.id))
        with self.assertRaises(TransactionNotFound):
            self.store.update("user-2", record.id, TransactionUpdate(description="Hijacked"))
        self.assertFalse(self.store.delete("user-2", record.id))
        self.assertEqual(self.store.get("user-1", record.id).description, "Lunch")

    def test_missing_transaction_raises_not_found(self) -> None:
        with self.assertRaises(TransactionNotFound):
            self.store.update("user-1", "missing", TransactionUpdate(description="x"))

    def test_delete_removes_row(self) -> None:
        record = self.add("10", description="Lunch")

        self.assertTrue(self.store.delete("user-1", record.id))
        self.assertIsNone(self.store.get("user-1", record.id))


class UpdateTests(TransactionStoreTestCase):
    def test_amount_change_renormalizes(self) -> None:
        record = self.add("100", description="Dinner")

        updated = self.store.update("user-1", record.id, TransactionUpdate(amount=Decimal("50"), currency="EUR"))

        self.assertEqual(updated.original_amount, Decimal("50"))
        self.assertEqual(updated.original_currency, "EUR")
        self.assertEqual(updated.converted_amount, Decimal("54"))
        self.assertGreater(updated.updated_at, record.updated_at)

    def test_amount_change_uses_current_default_currency(self) -> None:
        record = self.add("100", description="Dinner")
        self.store.change_default_currency("user-1", "EUR")

        updated = self.store.update("user-1", record.id, TransactionUpdate(amount=Decimal("100")))

        self.assertEqual(updated.original_currency, "USD")
        self.assertEqual(updated.converted_currency, "EUR")
        self.assertEqual(updated.converted_amount, Decimal("50"))
        self.assertEqual(updated.conversion_rate, Decimal("0.5"))

    def test_metadata_change_keeps_amounts(self) -> None:
        record = self.add("500", "EUR", description="Hotel")

        updated = self.store.update(
            "user-1",
            record.id,
            TransactionUpdate(description="Hotel Paris", vendor="Le Grand", category="Travel"),
        )

        self.assertEqual(updated.description, "Hotel Paris")
        self.assertEqual(updated.vendor, "Le Grand")
        self.assertEqual(updated.category, "Travel")
        self.assertEqual(updated.converted_amount, Decimal("540"))


class QueryTests(TransactionStoreTestCase):
    def test_date_range_is_inclusive_and_newest_first(self) -> None:
        first = self.add("1", description="a", transaction_date=date(2024, 5, 1))
        second = self.add("2", description="b", transaction_date=date(2024, 5, 1))
        last = self.add("3", description="c", transaction_date=date(2024, 5, 31))
        self.add("4", description="d", transaction_date=date(2024, 6, 1))

        records = self.store.find_by_date_range("user-1", date(2024, 5, 1), date(2024, 5, 31))

        self.assertEqual([record.id for record in records], [last.id, second.id, first.id])

    def test_date_range_rejects_inverted_bounds(self) -> None:
        with self.assertRaises(ValueError):
            self.store.find_by_date_range("user-1", date(2024, 6, 1), date(2024, 5, 1))

    def test_search_matches_description_vendor_and_category(self) -> None:
        latte = self.add("5", description="Latte", vendor="Corner Cafe", category="Food & Dining")
        flight = self.add("300", description="Flight home", category="Travel")
        self.add("7", description="Bus", vendor="City", user_id="user-2")

        self.assertEqual([record.id for record in self.store.search("user-1", "cafe")], [latte.id])
        self.assertEqual([record.id for record in self.store.search("user-1", "TRAVEL")], [flight.id])
        self.assertEqual(self.store.search("user-1", "bus"), [])

    def test_search_treats_wildcards_literally(self) -> None:
        self.add("5", description="Latte")

        self.assertEqual(self.store.search("user-1", "%"), [])

    def test_list_is_paginated(self) -> None:
        for index in range(3):
            self.add(str(index + 1), description=f"item {index}", transaction_date=date(2024, 5, index + 1))

        page = self.store.list_for_user("user-1", limit=2, offset=1)

        self.assertEqual([record.description for record in page], ["item 1", "item 0"])


class StatsTests(TransactionStoreTestCase):
    def test_stats_in_default_currency(self) -> None:
        self.add("1000", description="Salary", category="Salary")
        self.add("500", "EUR", description="Hotel", category="Travel")

        stats = self.store.get_stats("user-1")

        self.assertEqual(stats.default_currency, "USD")
        self.assertEqual(stats.total_income, Decimal("1000"))
        self.assertEqual(stats.total_expenses, Decimal("540"))
        self.assertEqual(stats.net_amount, Decimal("460"))
        self.assertEqual(stats.transaction_count, 2)

    def test_currency_change_reconverts_at_read_time_only(self) -> None:
        usd = self.add("100", description="Shoes", category="Shopping")
        self.add("500", "EUR", description="Hotel", category="Travel")

        self.store.change_default_currency("user-1", "EUR")
        stats = self.store.get_stats("user-1")

        self.assertEqual(stats.default_currency, "EUR")
        self.assertEqual(stats.total_expenses, Decimal("550"))
        self.assertEqual(self.store.get("user-1", usd.id).converted_currency, "USD")

    def test_period_comparison(self) -> None:
        self.add("1000", description="April rent", transaction_date=date(2024, 4, 1))
        self.add("1200", description="May rent", transaction_date=date(2024, 5, 1))

        comparison = self.store.compare_periods(
            "user-1", date(2024, 4, 1), date(2024, 4, 30), date(2024, 5, 1), date(2024, 5, 31)
        )

        self.assertEqual(comparison.change_amount, Decimal("200"))
        self.assertEqual(comparison.change_percentage, Decimal("20"))
        self.assertEqual(comparison.trend, "increasing")


class MigrationTests(TransactionStoreTestCase):
    def insert_legacy(self, transaction_id: str, amount: str, stored_type: str = "expense") -> None:
        now = datetime(2024, 1, 1)
        with self.engine.begin() as conn:
            conn.execute(
                insert(transactions).values(
                    id=transaction_id,
                    owner_id="user-1",
                    type=stored_type,
                    transaction_date=date(2024, 1, 2),
                    description="Legacy",
                    legacy_amount=Decimal(amount),
                    converted_currency="USD",
                    created_at=now,
                    updated_at=now,
                )
            )

    def test_legacy_rows_are_normalized_on_read(self) -> None:
        self.store.ensure_profile("user-1")
        self.insert_legacy("legacy-expense", "-25", stored_type="income")

        record = self.store.get("user-1", "legacy-expense")

        self.assertTrue(record.is_legacy)
        self.assertEqual(record.type, "expense")
        self.assertEqual(record.original_amount, Decimal("25"))
        self.assertEqual(record.converted_amount, Decimal("25"))
        self.assertEqual(record.conversion_rate, Decimal("1"))

    def test_type_change_on_legacy_row_is_kept(self) -> None:
        self.store.ensure_profile("user-1")
        self.insert_legacy("legacy-refund", "-10")

        updated = self.store.update("user-1", "legacy-refund", TransactionUpdate(type="income"))

        self.assertFalse(updated.is_legacy)
        self.assertEqual(updated.type, "income")
        self.assertEqual(updated.original_amount, Decimal("10"))
        self.assertEqual(updated.converted_currency, "USD")
        self.assertEqual(self.store.get("user-1", "legacy-refund").type, "income")

    def test_migration_rewrites_legacy_rows(self) -> None:
        self.store.ensure_profile("user-1")
        self.add("10", description="Modern")
        self.insert_legacy("legacy-1", "-25")
        self.insert_legacy("legacy-2", "40", stored_type="income")

        status = self.store.migration_status("user-1")
        self.assertTrue(status.needs_migration)
        self.assertEqual(status.legacy_transactions, 2)
        self.assertEqual(status.total_transactions, 3)

        result = self.store.migrate_legacy_transactions("user-1")

        self.assertTrue(result.success)
        self.assertEqual(result.migrated_count, 2)
        migrated = self.store.get("user-1", "legacy-2")
        self.assertFalse(migrated.is_legacy)
        self.assertEqual(migrated.type, "income")
        self.assertEqual(migrated.original_currency, "USD")
        self.assertFalse(self.store.migration_status("user-1").needs_migration)

    def test_reconversion_tolerates_partial_failure(self) -> None:
        self.add("500", "EUR", description="Hotel")
        self.add("100", description="Shoes")
        with self.assertLogs("fxledger", level="WARNING"):
            jpy = self.add("300", "JPY", description="Ramen")

            result = self.store.change_default_currency("user-1", "EUR", reconvert=True)

        self.assertFalse(result.success)
        self.assertEqual(result.migrated_count, 2)
        self.assertEqual(result.error_count, 1)
        self.assertIn(jpy.id, result.errors[0])
        converted = {record.description: record for record in self.store.list_for_user("user-1")}
        self.assertEqual(converted["Hotel"].converted_amount, Decimal("500"))
        self.assertEqual(converted["Hotel"].converted_currency, "EUR")
        self.assertEqual(converted["Shoes"].converted_amount, Decimal("50"))
        self.assertEqual(converted["Ramen"].converted_currency, "JPY")


if __name__ == "__main__":
    unittest.main()
