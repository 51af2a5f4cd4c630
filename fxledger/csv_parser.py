from __future__ import annotations

import csv
import io
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel

from fxledger.currency_conversion import normalize_currency
from fxledger.normalizer import normalize_legacy_signed


class ParsedTransaction(BaseModel):
    date: date
    description: str
    amount: Decimal
    type: str
    currency: str | None = None
    vendor: str | None = None
    raw_category: str | None = None


class CSVParseResult(BaseModel):
    rows: list[ParsedTransaction]
    skipped_count: int = 0


FIELD_MAP: dict[str, list[str]] = {
    "date": ["date", "transaction date", "trans date", "posting date", "post date", "date processed"],
    "description": ["description", "details", "memo", "reference", "narrative"],
    "vendor": ["vendor", "merchant", "merchant name", "payee"],
    "amount": ["amount", "value"],
    "debit": ["debit", "withdrawal", "charge", "purchase"],
    "credit": ["credit", "deposit"],
    "currency": ["currency", "ccy", "currency code"],
    "type": ["type", "transaction type", "direction"],
    "category": ["category"],
}

HEADER_KEYWORDS = {
    normalized
    for candidates in FIELD_MAP.values()
    for normalized in (re.sub(r"[^a-z0-9]", "", candidate) for candidate in candidates)
}

TYPE_ALIASES = {
    "income": "income",
    "credit": "income",
    "deposit": "income",
    "expense": "expense",
    "debit": "expense",
    "withdrawal": "expense",
    "purchase": "expense",
}

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%d/%m/%Y", "%d %b %Y", "%d %B %Y")


def parse_transactions_csv(contents: str) -> CSVParseResult:
    """Parse a spreadsheet export into unsigned amounts plus a transaction type.

    A type column wins when present; otherwise debit/credit columns or the
    amount sign (negative means expense) decide.
    """
    reader = csv.reader(io.StringIO(contents))
    rows = [row for row in reader if any(clean_text(value) for value in row)]
    if not rows:
        raise ValueError("CSV missing header row.")

    fieldnames = rows[0]
    if not looks_like_header(fieldnames):
        raise ValueError("CSV missing header row.")

    headers = {field: find_header(fieldnames, candidates) for field, candidates in FIELD_MAP.items()}
    if not headers["date"] or not (headers["description"] or headers["vendor"]):
        raise ValueError("CSV headers missing required fields.")
    if not (headers["amount"] or headers["debit"] or headers["credit"]):
        raise ValueError("CSV headers missing required fields.")

    parsed_rows: list[ParsedTransaction] = []
    skipped = 0
    for raw in rows[1:]:
        parsed = parse_row(row_to_dict(fieldnames, raw), headers)
        if parsed is None:
            skipped += 1
        else:
            parsed_rows.append(parsed)
    return CSVParseResult(rows=parsed_rows, skipped_count=skipped)


def looks_like_header(row: list[str]) -> bool:
    normalized = {normalize_header(value) for value in row if value}
    return bool(normalized & HEADER_KEYWORDS)


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str | None]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return dict(zip(fieldnames, row))


def parse_row(row: dict[str, str | None], headers: dict[str, str | None]) -> ParsedTransaction | None:
    date_value = parse_date(row.get(headers["date"]))
    if date_value is None:
        return None

    description = clean_text(row.get(headers["description"])) if headers["description"] else ""
    vendor = clean_text(row.get(headers["vendor"])) if headers["vendor"] else ""
    if not description and not vendor:
        return None

    signed = parse_amount(row, headers["amount"], headers["debit"], headers["credit"])
    if signed is None or signed == 0:
        return None

    declared_type = parse_type(row.get(headers["type"])) if headers["type"] else None
    if declared_type is not None:
        amount, transaction_type = abs(signed), declared_type
    else:
        amount, transaction_type = normalize_legacy_signed(signed)

    currency = None
    if headers["currency"]:
        raw_currency = clean_text(row.get(headers["currency"]))
        if raw_currency:
            try:
                currency = normalize_currency(raw_currency)
            except ValueError:
                return None

    raw_category = clean_text(row.get(headers["category"])) if headers["category"] else ""
    return ParsedTransaction(
        date=date_value,
        description=description or vendor,
        amount=amount,
        type=transaction_type,
        currency=currency,
        vendor=vendor or None,
        raw_category=raw_category or None,
    )


def parse_amount(
    row: dict[str, str | None],
    amount_header: str | None,
    debit_header: str | None,
    credit_header: str | None,
) -> Decimal | None:
    if debit_header:
        debit_value = parse_decimal(row.get(debit_header))
        if debit_value:
            return -abs(debit_value)

    if credit_header:
        credit_value = parse_decimal(row.get(credit_header))
        if credit_value:
            return abs(credit_value)

    if amount_header:
        return parse_decimal(row.get(amount_header))

    return None


def parse_type(value: str | None) -> str | None:
    return TYPE_ALIASES.get(normalize_header(value or ""))


def parse_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return date.fromisoformat(cleaned)
    except ValueError:
        return None


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = re.sub(r"[$€£¥,\s]", "", cleaned)

    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None

    return -amount if negative else amount


def find_header(fieldnames: list[str], candidates: list[str]) -> str | None:
    normalized = [(name, normalize_header(name)) for name in fieldnames if name]
    for candidate in candidates:
        cand_norm = normalize_header(candidate)
        for name, norm in normalized:
            if norm == cand_norm:
                return name
    return None


def normalize_header(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.strip().lower())


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""
