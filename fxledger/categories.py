from __future__ import annotations

DEFAULT_EXPENSE_CATEGORIES = [
    "Food & Dining",
    "Shopping",
    "Transportation",
    "Entertainment",
    "Bills & Utilities",
    "Healthcare",
    "Education",
    "Travel",
    "Other Expenses",
]

DEFAULT_INCOME_CATEGORIES = [
    "Salary",
    "Business",
    "Investment",
    "Gift",
    "Other Income",
]

DEFAULT_CATEGORIES: list[tuple[str, str]] = [
    *((name, "expense") for name in DEFAULT_EXPENSE_CATEGORIES),
    *((name, "income") for name in DEFAULT_INCOME_CATEGORIES),
]

# Free-form labels (parser or user supplied) folded onto the default set.
CATEGORY_ALIASES: dict[str, str] = {
    "food & drink": "Food & Dining",
    "food & beverages": "Food & Dining",
    "food": "Food & Dining",
    "groceries": "Food & Dining",
    "dining": "Food & Dining",
    "restaurant": "Food & Dining",
    "bills": "Bills & Utilities",
    "utilities": "Bills & Utilities",
    "transport": "Transportation",
    "medical": "Healthcare",
    "health": "Healthcare",
    "other": "Other Expenses",
    "expenses": "Other Expenses",
    "income": "Other Income",
}

FALLBACK_CATEGORY = {
    "expense": "Other Expenses",
    "income": "Other Income",
}


def map_category_alias(value: str | None, transaction_type: str = "expense") -> str:
    if not value or not value.strip():
        return FALLBACK_CATEGORY.get(transaction_type, "Other Expenses")
    cleaned = value.strip()
    return CATEGORY_ALIASES.get(cleaned.lower(), cleaned)
