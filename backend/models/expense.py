"""Pydantic models for expense data validation and serialization."""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from models.expense_category import ExpenseCategory
from models.policy import PolicyScope, PolicyVerdict


class ExpenseStatus(str, Enum):
    DRAFT = "Draft"
    VALIDATED = "Validated"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    PROCESSED = "Processed"
    REJECTED = "Rejected"


# States whose normalized amount has been computed at least once
NORMALIZED_STATES = {
    ExpenseStatus.VALIDATED,
    ExpenseStatus.SUBMITTED,
    ExpenseStatus.APPROVED,
    ExpenseStatus.PROCESSED,
}


class NormalizedAmount(BaseModel):
    """An amount converted to a target currency at a point-in-time rate."""
    amount: Decimal
    currency: str
    original_amount: Decimal
    original_currency: str
    rate: Decimal
    rate_fetched_at: Optional[datetime] = None


class Expense(BaseModel):
    """
    Pure domain record of one expense.

    ``normalized_amount`` is only ever set by validation and is fixed-point
    in the base currency.
    """
    id: str
    submitter_id: str
    scope: PolicyScope = Field(default_factory=PolicyScope)
    category: ExpenseCategory
    vendor: Optional[str] = None
    description: Optional[str] = None
    original_amount: Decimal
    original_currency: str

    normalized_amount: Optional[Decimal] = None
    base_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None

    status: ExpenseStatus = ExpenseStatus.DRAFT
    receipt_ids: List[str] = Field(default_factory=list)
    policy_verdict: Optional[PolicyVerdict] = None
    requires_secondary_approval: bool = False
    transaction_id: Optional[str] = None
    rejection_note: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    validated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    def clear_normalization(self):
        self.normalized_amount = None
        self.base_currency = None
        self.exchange_rate = None
        self.policy_verdict = None
        self.requires_secondary_approval = False
        self.validated_at = None


class ExpenseCreate(BaseModel):
    """Schema for creating a draft expense."""
    submitter_id: str = Field(..., description="Employee who incurred the expense")
    amount: Decimal = Field(..., gt=0, description="Amount in the original currency")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 code")
    category: ExpenseCategory = Field(..., description="Expense category")
    vendor: Optional[str] = Field(None, description="Merchant/vendor name")
    description: Optional[str] = Field(None, description="Expense description")
    employee_level: Optional[str] = Field(None, description="Submitter level for policy scope")
    department: Optional[str] = Field(None, description="Submitter department for policy scope")
    destination: Optional[str] = Field(None, description="Travel destination for policy scope")

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return v.upper()


class ExpenseUpdate(BaseModel):
    """Partial update; only allowed before submission."""
    amount: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    category: Optional[ExpenseCategory] = None
    vendor: Optional[str] = None
    description: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class ApprovalRequest(BaseModel):
    """Body for approve/reject calls from the approval collaborator."""
    actor: str = Field("Manager", description="Who made the decision")
    elevated: bool = Field(False, description="Secondary (elevated) approval granted")
    note: Optional[str] = None


class ExpenseResponse(BaseModel):
    """Expense as exposed to the HTTP layer and reporting collaborators."""
    id: str
    submitter_id: str
    scope: PolicyScope
    category: ExpenseCategory
    vendor: Optional[str] = None
    description: Optional[str] = None
    original_amount: Decimal
    original_currency: str
    normalized_amount: Optional[Decimal] = None
    base_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    status: ExpenseStatus
    receipt_ids: List[str] = []
    policy_verdict: Optional[PolicyVerdict] = None
    requires_secondary_approval: bool = False
    transaction_id: Optional[str] = None
    rejection_note: Optional[str] = None
    created_at: datetime
    validated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    class Config:
        from_attributes = True
