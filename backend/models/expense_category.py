"""Expense categories shared by receipts, expenses and policies."""

from enum import Enum


class ExpenseCategory(str, Enum):
    LODGING = "Lodging"
    MEALS = "Meals"
    TRANSPORTATION = "Transportation"
    MISCELLANEOUS = "Miscellaneous"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


# Tie-break order for keyword categorization: first match wins
CATEGORY_PRIORITY = [
    ExpenseCategory.LODGING,
    ExpenseCategory.MEALS,
    ExpenseCategory.TRANSPORTATION,
    ExpenseCategory.MISCELLANEOUS,
]
