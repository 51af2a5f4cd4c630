import unittest
from datetime import date
from decimal import Decimal

from fxledger.csv_parser import parse_decimal, parse_transactions_csv


class CSVParserTests(unittest.TestCase):
    def test_signed_amounts_become_magnitude_and_type(self) -> None:
        contents = "\n".join(
            [
                "Date,Description,Amount,Currency,Category",
                "2024-05-01,Hotel,-500.00,eur,Travel",
                "2024-05-02,Salary,2500,,",
            ]
        )

        result = parse_transactions_csv(contents)

        self.assertEqual(len(result.rows), 2)
        hotel, salary = result.rows
        self.assertEqual(hotel.amount, Decimal("500.00"))
        self.assertEqual(hotel.type, "expense")
        self.assertEqual(hotel.currency, "EUR")
        self.assertEqual(hotel.raw_category, "Travel")
        self.assertEqual(salary.type, "income")
        self.assertIsNone(salary.currency)
        self.assertIsNone(salary.raw_category)

    def test_type_column_wins_over_sign(self) -> None:
        contents = "\n".join(
            [
                "Transaction Date,Merchant,Amount,Type",
                "05/03/2024,Corner Cafe,4.50,debit",
            ]
        )

        row = parse_transactions_csv(contents).rows[0]

        self.assertEqual(row.date, date(2024, 5, 3))
        self.assertEqual(row.type, "expense")
        self.assertEqual(row.vendor, "Corner Cafe")
        self.assertEqual(row.description, "Corner Cafe")

    def test_debit_and_credit_columns(self) -> None:
        contents = "\n".join(
            [
                "Date,Description,Debit,Credit",
                "2024-05-01,Groceries,42.10,",
                "2024-05-02,Refund,,15.00",
            ]
        )

        rows = parse_transactions_csv(contents).rows

        self.assertEqual([(row.type, row.amount) for row in rows], [("expense", Decimal("42.10")), ("income", Decimal("15.00"))])

    def test_invalid_rows_are_skipped(self) -> None:
        contents = "\n".join(
            [
                "Date,Description,Amount,Currency",
                "not a date,Coffee,-3,USD",
                "2024-05-01,Coffee,0,USD",
                "2024-05-01,Coffee,-3,EURO",
                "2024-05-01,Coffee,-3,USD",
                ",,,",
            ]
        )

        result = parse_transactions_csv(contents)

        self.assertEqual(len(result.rows), 1)
        self.assertEqual(result.skipped_count, 3)

    def test_missing_required_headers_raise(self) -> None:
        with self.assertRaises(ValueError):
            parse_transactions_csv("Date,Notes\n2024-05-01,hello")

    def test_empty_file_raises(self) -> None:
        with self.assertRaises(ValueError):
            parse_transactions_csv("")

    def test_parse_decimal_formats(self) -> None:
        self.assertEqual(parse_decimal("(1,234.50)"), Decimal("-1234.50"))
        self.assertEqual(parse_decimal("€12"), Decimal("12"))
        self.assertIsNone(parse_decimal("abc"))


if __name__ == "__main__":
    unittest.main()
