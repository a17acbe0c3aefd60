"""Pydantic models for expense policies and policy verdicts."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field

from models.expense_category import ExpenseCategory


class PolicyScope(BaseModel):
    """Who a policy applies to. ``None`` on a key matches any value."""
    level: Optional[str] = None
    department: Optional[str] = None
    destination: Optional[str] = None

    def specificity(self) -> int:
        return sum(1 for v in (self.level, self.department, self.destination) if v is not None)

    def covers(self, other: "PolicyScope") -> bool:
        """True when every key set on this scope equals the submitter's value."""
        for key in ("level", "department", "destination"):
            mine = getattr(self, key)
            if mine is not None and _norm(mine) != _norm(getattr(other, key)):
                return False
        return True


def _norm(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value else value


class Policy(BaseModel):
    """
    Expense policy for a submitter scope.

    Amounts are expressed in the base currency. ``approval_threshold`` is the
    ceiling up to which an amount above ``max_amount_per_expense`` is only
    flagged for additional approval; above it (or when unset) the excess is a
    hard violation.
    """
    id: str
    name: str
    scope: PolicyScope = Field(default_factory=PolicyScope)
    allowed_categories: Set[ExpenseCategory] = Field(default_factory=set)
    max_amount_per_expense: Decimal = Decimal("0")
    approval_threshold: Optional[Decimal] = None
    receipt_required_categories: Set[ExpenseCategory] = Field(default_factory=set)
    receipt_required_above: Optional[Decimal] = None
    priority: int = 100  # Lower number wins among equally specific policies
    active: bool = True

    @classmethod
    def restrictive_default(cls) -> "Policy":
        """Policy used when nothing matches: no categories, zero limit."""
        return cls(
            id="default-deny",
            name="No applicable policy",
            allowed_categories=set(),
            max_amount_per_expense=Decimal("0"),
        )


class Severity(str, Enum):
    HARD = "hard"  # blocks: expense is rejected
    SOFT = "soft"  # flags: expense proceeds but needs elevated approval


class ReasonKind(str, Enum):
    NO_APPLICABLE_POLICY = "no_applicable_policy"
    CATEGORY_NOT_ALLOWED = "category_not_allowed"
    EXCEEDS_POLICY_LIMIT = "exceeds_policy_limit"
    REQUIRES_ADDITIONAL_APPROVAL = "requires_additional_approval"
    MISSING_RECEIPT = "missing_receipt"
    INVALID_RECEIPT = "invalid_receipt"
    RECEIPT_AMOUNT_MISMATCH = "receipt_amount_mismatch"


class Reason(BaseModel):
    """A single violated rule, tagged hard or soft."""
    severity: Severity
    kind: ReasonKind
    message: str

    @classmethod
    def hard(cls, kind: ReasonKind, message: str) -> "Reason":
        return cls(severity=Severity.HARD, kind=kind, message=message)

    @classmethod
    def soft(cls, kind: ReasonKind, message: str) -> "Reason":
        return cls(severity=Severity.SOFT, kind=kind, message=message)


class PolicyVerdict(BaseModel):
    """Accumulated outcome of evaluating one expense against one policy."""
    policy_id: Optional[str] = None
    reasons: List[Reason] = Field(default_factory=list)
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def passed(self) -> bool:
        return not self.reasons

    @property
    def hard_reasons(self) -> List[Reason]:
        return [r for r in self.reasons if r.severity == Severity.HARD]

    @property
    def soft_reasons(self) -> List[Reason]:
        return [r for r in self.reasons if r.severity == Severity.SOFT]

    @property
    def is_hard_fail(self) -> bool:
        return bool(self.hard_reasons)

    @property
    def requires_additional_approval(self) -> bool:
        return bool(self.soft_reasons) and not self.hard_reasons

    def kinds(self) -> List[ReasonKind]:
        return [r.kind for r in self.reasons]
