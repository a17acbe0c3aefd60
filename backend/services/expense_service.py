"""
Expense Service - inbound operations for expenses and receipts.

Thin orchestration over ExpenseLifecycle plus the two operations the state
machine does not own: editing a draft and attaching OCR'd receipts.
"""

import logging
import uuid
from typing import List, Optional

from models.expense import Expense, ExpenseCreate, ExpenseStatus, ExpenseUpdate
from models.receipt import ExtractionResult, Receipt
from services.audit import AuditTrail
from services.exceptions import IncompleteExtractionError, NotFoundError, PreconditionError
from services.expense_lifecycle import ExpenseLifecycle
from services.ocr_service import ImageSource, ReceiptExtractor

logger = logging.getLogger("ExpenseFlow.ExpenseService")

EDITABLE_STATES = (ExpenseStatus.DRAFT, ExpenseStatus.VALIDATED)


class ExpenseService:
    def __init__(
        self,
        expenses,
        receipts,
        lifecycle: ExpenseLifecycle,
        extractor: ReceiptExtractor,
        audit: Optional[AuditTrail] = None,
    ):
        self.expenses = expenses
        self.receipts = receipts
        self.lifecycle = lifecycle
        self.extractor = extractor
        self.audit = audit

    def get(self, expense_id: str) -> Expense:
        expense = self.expenses.get(expense_id)
        if expense is None:
            raise NotFoundError(f"Expense {expense_id} not found", expense_id=expense_id)
        return expense

    def list(self, status: Optional[ExpenseStatus] = None, submitter_id: Optional[str] = None) -> List[Expense]:
        return self.expenses.find_by_query(status=status, submitter_id=submitter_id)

    def create_expense(self, data: ExpenseCreate, actor: Optional[str] = None) -> Expense:
        return self.lifecycle.create(data, actor=actor)

    def update_expense(self, expense_id: str, data: ExpenseUpdate, actor: Optional[str] = None) -> Expense:
        """
        Edit an expense before submission. A Validated expense drops back to
        Draft and must be validated again.
        """
        expense = self.get(expense_id)
        prior = expense.status
        if prior not in EDITABLE_STATES:
            raise PreconditionError(
                f"Expense {expense_id} is {prior.value} and can no longer be edited",
                expense_id=expense_id,
                status=prior.value,
            )

        changes = data.model_dump(exclude_unset=True)
        amount = changes.pop("amount", None)
        currency = changes.pop("currency", None)
        if amount is not None:
            expense.original_amount = amount
        if currency is not None:
            expense.original_currency = currency
        for field, value in changes.items():
            # vendor and description may be cleared, category may not
            if field == "category" and value is None:
                continue
            setattr(expense, field, value)

        self._back_to_draft(expense)
        self.expenses.save(expense, expected_status=prior)
        self._record("updated", actor or expense.submitter_id, expense_id, {
            "fields": sorted(data.model_dump(exclude_unset=True)),
            "from": prior.value,
        })
        logger.info(f"✏️ Expense {expense_id} updated ({prior.value} -> {expense.status.value})")
        return expense

    async def upload_receipt(
        self,
        expense_id: str,
        image: ImageSource,
        image_ref: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Receipt:
        """
        OCR a receipt image and attach it.

        ImageLoadError / OcrEngineError propagate and nothing is stored.
        IncompleteExtractionError still attaches the partial receipt (for
        manual completion) and is re-raised with ``receipt`` set.
        """
        expense = self.get(expense_id)
        if expense.status not in EDITABLE_STATES:
            raise PreconditionError(
                f"Cannot attach receipts to expense {expense_id} in state {expense.status.value}",
                expense_id=expense_id,
                status=expense.status.value,
            )
        ref = image_ref or (image if isinstance(image, str) else f"upload:{uuid.uuid4().hex[:12]}")

        try:
            result = await self.extractor.extract(image)
        except IncompleteExtractionError as e:
            receipt = self._attach(expense_id, str(ref), e.result, actor)
            e.receipt = receipt
            self._record("receipt_incomplete", actor or expense.submitter_id, expense_id, {
                "receipt_id": receipt.id,
                "missing": e.missing,
            })
            logger.warning(f"📄 Receipt {receipt.id} on {expense_id} needs manual entry: {', '.join(e.missing)}")
            raise

        receipt = self._attach(expense_id, str(ref), result, actor)
        self._record("receipt_attached", actor or expense.submitter_id, expense_id, {
            "receipt_id": receipt.id,
            "amount": str(receipt.fields.amount.value),
            "vendor": receipt.fields.vendor.value,
        })
        logger.info(f"📎 Receipt {receipt.id} attached to {expense_id}")
        return receipt

    async def validate_expense(self, expense_id: str, actor: str = "system") -> Expense:
        return await self.lifecycle.validate(expense_id, actor=actor)

    async def submit_expense(self, expense_id: str, actor: Optional[str] = None) -> Expense:
        return await self.lifecycle.submit(expense_id, actor=actor)

    def approve_expense(self, expense_id: str, actor: str = "Manager", elevated: bool = False, note: Optional[str] = None) -> Expense:
        return self.lifecycle.approve(expense_id, actor=actor, elevated=elevated, note=note)

    def reject_expense(self, expense_id: str, actor: str = "Manager", note: Optional[str] = None) -> Expense:
        return self.lifecycle.reject(expense_id, actor=actor, note=note)

    def receipts_for(self, expense_id: str) -> List[Receipt]:
        self.get(expense_id)
        return self.receipts.find_by_query(expense_id=expense_id)

    # ─── Helpers ─────────────────────────────────────────────────

    def _attach(self, expense_id: str, image_ref: str, result: ExtractionResult, actor: Optional[str]) -> Receipt:
        # OCR suspended us; the expense may have been submitted or rejected since
        expense = self.get(expense_id)
        prior = expense.status
        if prior not in EDITABLE_STATES:
            raise PreconditionError(
                f"Expense {expense_id} moved to {prior.value} during OCR; receipt discarded",
                expense_id=expense_id,
                status=prior.value,
            )

        receipt = Receipt(
            id=f"RCT-{uuid.uuid4().hex[:8].upper()}",
            expense_id=expense_id,
            image_ref=image_ref,
            fields=result.fields,
            raw_text=result.raw_text,
            ocr_confidence=result.ocr_confidence,
        )
        self.receipts.save(receipt)

        # New evidence invalidates the previous verdict
        if prior == ExpenseStatus.VALIDATED:
            self._back_to_draft(expense)
            self.expenses.save(expense, expected_status=prior)
        return receipt

    def _back_to_draft(self, expense: Expense):
        if expense.status == ExpenseStatus.VALIDATED:
            expense.clear_normalization()
            expense.status = ExpenseStatus.DRAFT

    def _record(self, action: str, actor: str, expense_id: str, details: Optional[dict] = None):
        if self.audit is not None:
            self.audit.record(action=action, actor=actor, expense_id=expense_id, details=details)
