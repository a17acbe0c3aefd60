"""
Expense Lifecycle - owns the expense state machine.

    Draft ──validate──▶ Validated ──submit──▶ Submitted ──approve──▶ Approved ──mark_processed──▶ Processed
                 │            │                   │
                 └── hard ────┴──── reject ───────┴──────────▶ Rejected (terminal)

Every transition checks the current state first and writes with a
compare-and-set on that state, so a transition that lost a race raises
PreconditionError instead of overwriting the winner.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from models.expense import Expense, ExpenseCreate, ExpenseStatus
from models.policy import PolicyScope
from services.audit import AuditTrail
from services.currency_normalizer import CurrencyNormalizer
from services.exceptions import NotFoundError, PolicyViolationError, PreconditionError
from services.policy_engine import PolicyEngine

logger = logging.getLogger("ExpenseFlow.ExpenseLifecycle")


class ApprovalNotifier(Protocol):
    """External approval collaborator; receives submitted expenses."""

    async def expense_submitted(self, expense: Expense) -> None:
        ...


class LoggingApprovalNotifier:
    async def expense_submitted(self, expense: Expense) -> None:
        tier = "elevated" if expense.requires_secondary_approval else "standard"
        logger.info(
            f"📨 Expense {expense.id} sent for {tier} approval "
            f"({expense.normalized_amount} {expense.base_currency})"
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExpenseLifecycle:
    """Draft -> Validated -> Submitted -> Approved -> Processed, with Rejected terminal."""

    def __init__(
        self,
        expenses,
        receipts,
        normalizer: CurrencyNormalizer,
        policy_engine: PolicyEngine,
        audit: Optional[AuditTrail] = None,
        notifier: Optional[ApprovalNotifier] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.expenses = expenses
        self.receipts = receipts
        self.normalizer = normalizer
        self.policy_engine = policy_engine
        self.audit = audit
        self.notifier = notifier or LoggingApprovalNotifier()
        self._now = now

    # ─── Transitions ─────────────────────────────────────────────

    def create(self, data: ExpenseCreate, actor: Optional[str] = None) -> Expense:
        """New Draft expense. No validation is performed."""
        expense = Expense(
            id=f"EXP-{uuid.uuid4().hex[:8].upper()}",
            submitter_id=data.submitter_id,
            scope=PolicyScope(
                level=data.employee_level,
                department=data.department,
                destination=data.destination,
            ),
            category=data.category,
            vendor=data.vendor,
            description=data.description,
            original_amount=data.amount,
            original_currency=data.currency,
            status=ExpenseStatus.DRAFT,
            created_at=self._now(),
        )
        self.expenses.save(expense)
        self._record("created", actor or data.submitter_id, expense, {
            "amount": str(expense.original_amount),
            "currency": expense.original_currency,
            "category": expense.category.value,
        })
        logger.info(f"📝 Expense {expense.id} drafted: {expense.original_amount} {expense.original_currency}")
        return expense

    async def validate(self, expense_id: str, actor: str = "system") -> Expense:
        """
        Normalize then evaluate policy.

        pass        -> Validated
        soft fail   -> Validated, flagged for elevated approval
        hard fail   -> Rejected, raises PolicyViolationError

        RateUnavailableError propagates with nothing written. If the expense
        moved while normalization was in flight the result is discarded with
        PreconditionError.
        """
        expense = self._load(expense_id)
        prior = expense.status
        if prior not in (ExpenseStatus.DRAFT, ExpenseStatus.VALIDATED):
            raise PreconditionError(
                f"Cannot validate expense {expense_id} in state {prior.value}",
                expense_id=expense_id,
                status=prior.value,
            )

        normalized = await self.normalizer.normalize(expense.original_amount, expense.original_currency)

        # Re-read after the suspension point: a concurrent reject or edit wins
        current = self._load(expense_id)
        if (
            current.status != prior
            or current.original_amount != expense.original_amount
            or current.original_currency != expense.original_currency
        ):
            logger.warning(
                f"⏭️ Discarding validation of {expense_id}: expense changed to "
                f"{current.status.value} while normalizing"
            )
            raise PreconditionError(
                f"Expense {expense_id} changed during validation; result discarded",
                expense_id=expense_id,
                status=current.status.value,
            )

        current.normalized_amount = normalized.amount
        current.base_currency = normalized.currency
        current.exchange_rate = normalized.rate

        verdict = self.policy_engine.evaluate(current, self.receipts.find_by_query(expense_id=expense_id))
        current.policy_verdict = verdict
        now = self._now()

        if verdict.is_hard_fail:
            current.status = ExpenseStatus.REJECTED
            current.rejected_at = now
            current.requires_secondary_approval = False
            current.rejection_note = "; ".join(r.message for r in verdict.hard_reasons)
            self.expenses.save(current, expected_status=prior)
            self._record("rejected", actor, current, {
                "stage": "policy",
                "reasons": [r.model_dump(mode="json") for r in verdict.reasons],
            })
            raise PolicyViolationError(
                f"Expense {expense_id} rejected: {current.rejection_note}",
                verdict=verdict,
                expense_id=expense_id,
            )

        current.status = ExpenseStatus.VALIDATED
        current.validated_at = now
        current.requires_secondary_approval = verdict.requires_additional_approval
        self.expenses.save(current, expected_status=prior)
        self._record("revalidated" if prior == ExpenseStatus.VALIDATED else "validated", actor, current, {
            "normalized_amount": str(current.normalized_amount),
            "base_currency": current.base_currency,
            "rate": str(current.exchange_rate),
            "flags": [r.kind.value for r in verdict.soft_reasons],
        })
        logger.info(
            f"✅ Expense {expense_id} validated: {current.original_amount} {current.original_currency} "
            f"-> {current.normalized_amount} {current.base_currency}"
            + (" (needs elevated approval)" if current.requires_secondary_approval else "")
        )
        return current

    async def submit(self, expense_id: str, actor: Optional[str] = None) -> Expense:
        expense = self._load(expense_id)
        self._require(expense, ExpenseStatus.VALIDATED, "submit")
        if expense.policy_verdict is None or expense.policy_verdict.is_hard_fail:
            raise PreconditionError(
                f"Expense {expense_id} has no passing policy verdict",
                expense_id=expense_id,
            )

        expense.status = ExpenseStatus.SUBMITTED
        expense.submitted_at = self._now()
        self.expenses.save(expense, expected_status=ExpenseStatus.VALIDATED)
        self._record("submitted", actor or expense.submitter_id, expense)
        await self.notifier.expense_submitted(expense)
        return expense

    def approve(self, expense_id: str, actor: str = "Manager", elevated: bool = False, note: Optional[str] = None) -> Expense:
        expense = self._load(expense_id)
        self._require(expense, ExpenseStatus.SUBMITTED, "approve")
        if expense.requires_secondary_approval and not elevated:
            raise PreconditionError(
                f"Expense {expense_id} is flagged and requires elevated approval",
                expense_id=expense_id,
                reasons=[r.kind.value for r in expense.policy_verdict.soft_reasons] if expense.policy_verdict else [],
            )

        expense.status = ExpenseStatus.APPROVED
        expense.approved_at = self._now()
        self.expenses.save(expense, expected_status=ExpenseStatus.SUBMITTED)
        self._record("approved", actor, expense, {"elevated": elevated, "note": note})
        logger.info(f"👍 Expense {expense_id} approved by {actor}{' (elevated)' if elevated else ''}")
        return expense

    def reject(self, expense_id: str, actor: str = "Manager", note: Optional[str] = None) -> Expense:
        expense = self._load(expense_id)
        prior = expense.status
        if prior not in (ExpenseStatus.VALIDATED, ExpenseStatus.SUBMITTED):
            raise PreconditionError(
                f"Cannot reject expense {expense_id} in state {prior.value}",
                expense_id=expense_id,
                status=prior.value,
            )

        expense.status = ExpenseStatus.REJECTED
        expense.rejected_at = self._now()
        expense.rejection_note = note
        self.expenses.save(expense, expected_status=prior)
        self._record("rejected", actor, expense, {"note": note, "from": prior.value})
        logger.info(f"👎 Expense {expense_id} rejected by {actor}")
        return expense

    def mark_processed(self, expense_id: str, transaction_id: str, actor: str = "SettlementProcessor") -> Expense:
        expense = self._load(expense_id)
        self._require(expense, ExpenseStatus.APPROVED, "mark processed")
        if not transaction_id:
            raise PreconditionError(f"Expense {expense_id} cannot be processed without a transaction id")

        expense.status = ExpenseStatus.PROCESSED
        expense.transaction_id = transaction_id
        expense.processed_at = self._now()
        self.expenses.save(expense, expected_status=ExpenseStatus.APPROVED)
        self._record("processed", actor, expense, transaction_id=transaction_id)
        return expense

    # ─── Helpers ─────────────────────────────────────────────────

    def _load(self, expense_id: str) -> Expense:
        expense = self.expenses.get(expense_id)
        if expense is None:
            raise NotFoundError(f"Expense {expense_id} not found", expense_id=expense_id)
        return expense

    def _require(self, expense: Expense, state: ExpenseStatus, action: str):
        if expense.status != state:
            raise PreconditionError(
                f"Cannot {action} expense {expense.id}: state is {expense.status.value}, "
                f"expected {state.value}",
                expense_id=expense.id,
                status=expense.status.value,
            )

    def _record(self, action: str, actor: str, expense: Expense, details: Optional[dict] = None, transaction_id: Optional[str] = None):
        if self.audit is None:
            return
        self.audit.record(
            action=action,
            actor=actor,
            expense_id=expense.id,
            details=details,
            transaction_id=transaction_id,
        )
