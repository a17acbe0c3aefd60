"""Pydantic models for reimbursements, settlement results and payroll acks."""

import hashlib
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


class ReimbursementStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    PROCESSED = "Processed"
    FAILED = "Failed"


def idempotency_key_for(expense_id: str) -> str:
    """Stable gateway idempotency key: same expense, same key, every attempt."""
    digest = hashlib.sha256(f"reimbursement:{expense_id}".encode("utf-8")).hexdigest()
    return f"reimb_{digest[:32]}"


class Reimbursement(BaseModel):
    """
    One-time payout for an approved expense.

    ``gateway_transaction_id`` is non-empty exactly when status is Processed,
    and only SettlementProcessor writes it.
    """
    id: str
    expense_id: str
    employee_id: str
    amount: Decimal
    currency: str
    status: ReimbursementStatus = ReimbursementStatus.PENDING
    idempotency_key: str
    gateway_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None

    payroll_posted_at: Optional[datetime] = None
    payroll_reference: Optional[str] = None
    payroll_error: Optional[str] = None

    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class ReimbursementCreate(BaseModel):
    """Schema for requesting a reimbursement of an approved expense."""
    expense_id: str = Field(..., description="Approved expense to reimburse")


class ReimbursementResponse(BaseModel):
    id: str
    expense_id: str
    employee_id: str
    amount: Decimal
    currency: str
    status: ReimbursementStatus
    idempotency_key: str
    gateway_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    payroll_posted_at: Optional[datetime] = None
    payroll_reference: Optional[str] = None
    payroll_error: Optional[str] = None
    submitted_at: datetime
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SettlementResult(BaseModel):
    """Outcome of one settle() call that reached the gateway."""
    reimbursement_id: str
    success: bool
    status: ReimbursementStatus
    transaction_id: Optional[str] = None
    gateway_status: Optional[str] = None
    retryable: bool = False
    reason: Optional[str] = None


class PayrollAck(BaseModel):
    """Acknowledgement from the payroll ledger."""
    reference_id: str
    external_id: Optional[str] = None
    duplicate: bool = False
    posted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProcessOutcome(BaseModel):
    """Result of processReimbursement: settlement plus payroll posting."""
    reimbursement: ReimbursementResponse
    settlement: SettlementResult
    payroll: Optional[PayrollAck] = None
    payroll_error: Optional[dict] = None
