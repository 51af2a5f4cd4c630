from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from fxledger.normalizer import AmountSource


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


@dataclass(frozen=True)
class Profile:
    id: str
    default_currency: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Category:
    id: int
    owner_id: Optional[str]
    name: str
    type: str
    is_default: bool = False


@dataclass(frozen=True)
class TransactionRecord:
    id: str
    owner_id: str
    type: str
    transaction_date: date
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    converted_currency: str
    conversion_rate: Decimal
    conversion_fee: Decimal
    category_id: Optional[int] = None
    category: Optional[str] = None
    description: Optional[str] = None
    vendor: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_legacy: bool = False


@dataclass(frozen=True)
class TransactionInput:
    amount: AmountSource
    description: str = ""
    vendor: Optional[str] = None
    category: Optional[str] = None
    type: Optional[str] = None
    transaction_date: Optional[date] = None


@dataclass(frozen=True)
class TransactionUpdate:
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    vendor: Optional[str] = None
    category: Optional[str] = None
    type: Optional[str] = None
    transaction_date: Optional[date] = None

    @property
    def changes_amount(self) -> bool:
        return self.amount is not None or self.currency is not None


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    amount: Decimal
    count: int


@dataclass(frozen=True)
class TransactionStats:
    total_income: Decimal
    total_expenses: Decimal
    net_amount: Decimal
    transaction_count: int
    average_transaction: Decimal
    default_currency: str
    top_categories: list[CategoryTotal]


@dataclass
class MigrationResult:
    success: bool = False
    migrated_count: int = 0
    error_count: int = 0
    errors: list[str] = None

    def __post_init__(self) -> None:
        if self.errors is None:
            self.errors = []


@dataclass(frozen=True)
class MigrationStatus:
    needs_migration: bool
    total_transactions: int
    migrated_transactions: int
    legacy_transactions: int
