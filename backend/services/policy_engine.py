"""
Policy Engine - Enforces organizational expense rules.

Checks run in a fixed order and every violation is accumulated:
  1. category not in the policy allow-list
  2. normalized amount above the per-expense limit
  3. missing / invalid receipt where one is required

Each violation is a Reason tagged hard (rejects the expense) or soft
(expense proceeds but needs elevated approval). A verdict with zero
reasons is a pass.

When no policy covers the submitter's scope the engine evaluates against a
restrictive default that allows nothing, so the verdict is always a hard
fail.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol

from models.expense import Expense
from models.policy import Policy, PolicyScope, PolicyVerdict, Reason, ReasonKind
from models.receipt import Receipt

logger = logging.getLogger("ExpenseFlow.PolicyEngine")


class PolicySource(Protocol):
    def find_by_query(self, active: Optional[bool] = True) -> List[Policy]:
        ...


class PolicyEngine:
    """Evaluates normalized expenses against the submitter's policy."""

    def __init__(self, policies: PolicySource, receipt_amount_tolerance: float = 0.15):
        self.policies = policies
        self.receipt_amount_tolerance = Decimal(str(receipt_amount_tolerance))

    def resolve_policy(self, scope: PolicyScope) -> Optional[Policy]:
        """Most specific active policy covering ``scope``; ties go to the lowest priority number."""
        candidates = [p for p in self.policies.find_by_query(active=True) if p.scope.covers(scope)]
        if not candidates:
            return None
        candidates.sort(key=lambda p: (-p.scope.specificity(), p.priority, p.id))
        return candidates[0]

    def evaluate(self, expense: Expense, receipts: Iterable[Receipt] = ()) -> PolicyVerdict:
        """
        Evaluate one expense. ``expense.normalized_amount`` must already be set.

        Returns:
            PolicyVerdict with every violated rule, in check order
        """
        if expense.normalized_amount is None:
            raise ValueError(f"Expense {expense.id} has not been normalized")

        receipts = list(receipts)
        reasons: List[Reason] = []

        policy = self.resolve_policy(expense.scope)
        if policy is None:
            logger.warning(
                f"🚫 No policy covers scope {expense.scope.model_dump()} for expense {expense.id}; failing closed"
            )
            policy = Policy.restrictive_default()
            reasons.append(Reason.hard(
                ReasonKind.NO_APPLICABLE_POLICY,
                "no applicable policy for submitter scope",
            ))

        # 1. Category allow-list
        reasons.extend(self._check_category(expense, policy))

        # 2. Per-expense limit
        reasons.extend(self._check_amount(expense, policy))

        # 3. Receipt presence and validity
        reasons.extend(self._check_receipts(expense, policy, receipts))

        verdict = PolicyVerdict(policy_id=policy.id, reasons=reasons)

        if verdict.passed:
            logger.info(f"✅ Expense {expense.id} passed policy '{policy.name}'")
        elif verdict.is_hard_fail:
            logger.info(
                f"❌ Expense {expense.id} failed policy '{policy.name}': "
                f"{', '.join(r.kind.value for r in verdict.hard_reasons)}"
            )
        else:
            logger.info(
                f"⚠️ Expense {expense.id} flagged by policy '{policy.name}': "
                f"{', '.join(r.kind.value for r in verdict.soft_reasons)}"
            )
        return verdict

    def _check_category(self, expense: Expense, policy: Policy) -> List[Reason]:
        if expense.category in policy.allowed_categories:
            return []
        return [Reason.hard(
            ReasonKind.CATEGORY_NOT_ALLOWED,
            f"category {expense.category.value} not allowed by policy '{policy.name}'",
        )]

    def _check_amount(self, expense: Expense, policy: Policy) -> List[Reason]:
        amount = expense.normalized_amount
        limit = policy.max_amount_per_expense
        if amount <= limit:
            return []

        ceiling = policy.approval_threshold
        if ceiling is not None and amount <= ceiling:
            return [Reason.soft(
                ReasonKind.REQUIRES_ADDITIONAL_APPROVAL,
                f"{amount} {expense.base_currency} exceeds limit of {limit} "
                f"but is within the additional-approval ceiling of {ceiling}",
            )]
        return [Reason.hard(
            ReasonKind.EXCEEDS_POLICY_LIMIT,
            f"exceeds policy limit: {amount} {expense.base_currency} > {limit}",
        )]

    def _check_receipts(self, expense: Expense, policy: Policy, receipts: List[Receipt]) -> List[Reason]:
        required = expense.category in policy.receipt_required_categories or (
            policy.receipt_required_above is not None
            and expense.normalized_amount > policy.receipt_required_above
        )

        if not receipts:
            if required:
                return [Reason.hard(
                    ReasonKind.MISSING_RECEIPT,
                    f"receipt required for {expense.category.value} expenses under policy '{policy.name}'",
                )]
            return []

        valid = [r for r in receipts if r.is_valid]
        if not valid:
            if required:
                missing = sorted({name for r in receipts for name in r.fields.missing_required()})
                return [Reason.hard(
                    ReasonKind.INVALID_RECEIPT,
                    f"attached receipt is unreadable (unresolved: {', '.join(missing)})",
                )]
            return []

        return self._check_receipt_total(expense, valid)

    def _check_receipt_total(self, expense: Expense, receipts: List[Receipt]) -> List[Reason]:
        """Soft flag when no receipt total is close to the submitted amount."""
        submitted = expense.original_amount
        totals = []
        for receipt in receipts:
            currency = receipt.fields.currency.value
            # Totals in another currency cannot be compared without a second conversion
            if currency and currency != expense.original_currency:
                continue
            totals.append(receipt.fields.amount.value)

        if not totals or submitted <= 0:
            return []

        for total in totals:
            if abs(total - submitted) / submitted <= self.receipt_amount_tolerance:
                return []

        return [Reason.soft(
            ReasonKind.RECEIPT_AMOUNT_MISMATCH,
            f"receipt total {totals[0]} differs from submitted amount "
            f"{submitted} {expense.original_currency}",
        )]
