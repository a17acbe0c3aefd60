"""
Reimbursement Service - creates reimbursements for approved expenses and
drives them through settlement and payroll posting.

A payroll failure after a successful charge is recorded on the
reimbursement for manual reconciliation; the charge is never rolled back.
"""

import logging
import uuid
from typing import List, Optional

from models.expense import ExpenseStatus
from models.reimbursement import (
    ProcessOutcome,
    Reimbursement,
    ReimbursementCreate,
    ReimbursementResponse,
    ReimbursementStatus,
    SettlementResult,
    idempotency_key_for,
)
from services.audit import AuditTrail
from services.exceptions import DuplicateReimbursementError, IntegrationError, NotFoundError, PreconditionError
from services.payroll import PayrollAdapter
from services.settlement import SettlementProcessor

logger = logging.getLogger("ExpenseFlow.ReimbursementService")


class ReimbursementService:
    def __init__(
        self,
        expenses,
        reimbursements,
        settlement: SettlementProcessor,
        payroll: PayrollAdapter,
        audit: Optional[AuditTrail] = None,
    ):
        self.expenses = expenses
        self.reimbursements = reimbursements
        self.settlement = settlement
        self.payroll = payroll
        self.audit = audit

    def get(self, reimbursement_id: str) -> Reimbursement:
        reimbursement = self.reimbursements.get(reimbursement_id)
        if reimbursement is None:
            raise NotFoundError(f"Reimbursement {reimbursement_id} not found", reimbursement_id=reimbursement_id)
        return reimbursement

    def list(self, status: Optional[ReimbursementStatus] = None, employee_id: Optional[str] = None) -> List[Reimbursement]:
        return self.reimbursements.find_by_query(status=status, employee_id=employee_id)

    def create_reimbursement(self, data: ReimbursementCreate, actor: str = "system") -> Reimbursement:
        """One Pending reimbursement per Approved expense, for its normalized amount."""
        expense = self.expenses.get(data.expense_id)
        if expense is None:
            raise NotFoundError(f"Expense {data.expense_id} not found", expense_id=data.expense_id)
        if expense.status != ExpenseStatus.APPROVED:
            raise PreconditionError(
                f"Expense {expense.id} is {expense.status.value}; only Approved expenses are reimbursed",
                expense_id=expense.id,
                status=expense.status.value,
            )

        existing = self.reimbursements.get_by_expense(expense.id)
        if existing is not None:
            raise DuplicateReimbursementError(
                f"Expense {expense.id} already has reimbursement {existing.id}",
                expense_id=expense.id,
                reimbursement_id=existing.id,
            )

        reimbursement = Reimbursement(
            id=f"RMB-{uuid.uuid4().hex[:8].upper()}",
            expense_id=expense.id,
            employee_id=expense.submitter_id,
            amount=expense.normalized_amount,
            currency=expense.base_currency,
            idempotency_key=idempotency_key_for(expense.id),
            approved_at=expense.approved_at,
        )
        self.reimbursements.save(reimbursement)
        self._record("reimbursement_created", actor, reimbursement, {
            "amount": str(reimbursement.amount),
            "currency": reimbursement.currency,
        })
        logger.info(
            f"🧾 Reimbursement {reimbursement.id} created for {expense.id}: "
            f"{reimbursement.amount} {reimbursement.currency}"
        )
        return reimbursement

    async def process_reimbursement(self, reimbursement_id: str) -> ProcessOutcome:
        """Settle, then post to payroll when the charge succeeded."""
        settlement = await self.settlement.settle(reimbursement_id)
        if not settlement.success:
            return ProcessOutcome(
                reimbursement=ReimbursementResponse.model_validate(self.get(reimbursement_id).model_dump()),
                settlement=settlement,
            )
        return await self._post(reimbursement_id, settlement)

    async def retry_payroll(self, reimbursement_id: str) -> ProcessOutcome:
        """Re-post a Processed reimbursement whose payroll post failed."""
        reimbursement = self.get(reimbursement_id)
        if reimbursement.status != ReimbursementStatus.PROCESSED:
            raise PreconditionError(
                f"Reimbursement {reimbursement_id} is {reimbursement.status.value}, expected Processed",
                reimbursement_id=reimbursement_id,
            )
        settlement = SettlementResult(
            reimbursement_id=reimbursement.id,
            success=True,
            status=reimbursement.status,
            transaction_id=reimbursement.gateway_transaction_id,
        )
        return await self._post(reimbursement_id, settlement)

    async def _post(self, reimbursement_id: str, settlement: SettlementResult) -> ProcessOutcome:
        reimbursement = self.get(reimbursement_id)
        try:
            ack = await self.payroll.post_to_payroll(reimbursement)
        except IntegrationError as e:
            reimbursement.payroll_error = e.message
            self.reimbursements.save(reimbursement, expected_status=ReimbursementStatus.PROCESSED)
            self._record("payroll_failed", "PayrollAdapter", reimbursement, {"error": e.to_dict()})
            logger.error(f"❌ {reimbursement_id} settled but not posted to payroll: {e.message}")
            return ProcessOutcome(
                reimbursement=ReimbursementResponse.model_validate(reimbursement.model_dump()),
                settlement=settlement,
                payroll_error=e.to_dict(),
            )

        reimbursement.payroll_posted_at = ack.posted_at
        reimbursement.payroll_reference = ack.external_id or ack.reference_id
        reimbursement.payroll_error = None
        self.reimbursements.save(reimbursement, expected_status=ReimbursementStatus.PROCESSED)
        self._record("payroll_posted", "PayrollAdapter", reimbursement, {
            "reference": reimbursement.payroll_reference,
            "duplicate": ack.duplicate,
        })
        return ProcessOutcome(
            reimbursement=ReimbursementResponse.model_validate(reimbursement.model_dump()),
            settlement=settlement,
            payroll=ack,
        )

    def _record(self, action: str, actor: str, reimbursement: Reimbursement, details: Optional[dict] = None):
        if self.audit is None:
            return
        self.audit.record(
            action=action,
            actor=actor,
            expense_id=reimbursement.expense_id,
            reimbursement_id=reimbursement.id,
            details=details,
            transaction_id=reimbursement.gateway_transaction_id,
        )
