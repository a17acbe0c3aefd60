"""Pydantic models for receipts and OCR-extracted fields."""

from datetime import date as date_type, datetime, timezone
from decimal import Decimal
from typing import ClassVar, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from models.expense_category import ExpenseCategory

T = TypeVar("T")


class ExtractedField(BaseModel, Generic[T]):
    """One parsed receipt field with its confidence, or an unresolved marker."""
    value: Optional[T] = None
    confidence: float = 0.0
    resolved: bool = False

    @classmethod
    def found(cls, value: T, confidence: float) -> "ExtractedField[T]":
        return cls(value=value, confidence=round(max(0.0, min(confidence, 1.0)), 3), resolved=True)

    @classmethod
    def unresolved(cls) -> "ExtractedField[T]":
        return cls()


class ExtractedFields(BaseModel):
    amount: ExtractedField[Decimal] = Field(default_factory=ExtractedField[Decimal])
    currency: ExtractedField[str] = Field(default_factory=ExtractedField[str])
    date: ExtractedField[date_type] = Field(default_factory=ExtractedField[date_type])
    vendor: ExtractedField[str] = Field(default_factory=ExtractedField[str])
    category: ExtractedField[ExpenseCategory] = Field(default_factory=ExtractedField[ExpenseCategory])

    REQUIRED: ClassVar[tuple] = ("amount", "date", "vendor")

    def missing_required(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name).resolved]

    @property
    def is_complete(self) -> bool:
        return not self.missing_required()


class ExtractionResult(BaseModel):
    """Output of a successful OCR pass (complete or not)."""
    fields: ExtractedFields
    raw_text: str = ""
    ocr_confidence: float = 0.0
    extras: Dict[str, Optional[Decimal]] = Field(default_factory=dict)  # subtotal, tax, tip


class Receipt(BaseModel):
    """
    Receipt attached to an expense. Raw OCR text is kept for audit.
    Immutable once its expense has been submitted.
    """
    id: str
    expense_id: str
    image_ref: str
    fields: ExtractedFields = Field(default_factory=ExtractedFields)
    raw_text: str = ""
    ocr_confidence: float = 0.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_valid(self) -> bool:
        """A receipt backs an expense only when amount, date and vendor are known."""
        return self.fields.is_complete


class ReceiptResponse(BaseModel):
    id: str
    expense_id: str
    image_ref: str
    fields: ExtractedFields
    ocr_confidence: float
    missing_fields: List[str] = []
    created_at: datetime
