"""
Repositories - map SQLAlchemy rows to pure domain models.

Each repository exposes ``get``, ``save`` and ``find_by_query``. ``save``
takes an optional ``expected_status``: the write only lands if the stored
status still equals it, otherwise PreconditionError is raised and nothing
is changed. That compare-and-set is what keeps a late pipeline result from
overwriting a concurrent transition.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import ExpenseDB, ReceiptDB, ReimbursementDB, PolicyDB
from models.expense import Expense, ExpenseStatus
from models.expense_category import ExpenseCategory
from models.policy import Policy, PolicyScope, PolicyVerdict
from models.receipt import ExtractedFields, Receipt
from models.reimbursement import Reimbursement, ReimbursementStatus
from services.currency_normalizer import quantize
from services.exceptions import DuplicateReimbursementError, PreconditionError

logger = logging.getLogger("ExpenseFlow.Repositories")


def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _money(value, currency: Optional[str]) -> Optional[Decimal]:
    # Numeric columns come back padded to their scale
    if value is None or not currency:
        return _dec(value)
    return quantize(_dec(value), currency)


class _SqlRepository:
    model = None
    key_column = None
    entity_name = "record"

    def __init__(self, db: Session):
        self.db = db

    def _row(self, key: str):
        return self.db.query(self.model).filter(getattr(self.model, self.key_column) == key).first()

    def _write(self, key: str, values: dict, expected_status=None):
        """Insert or update one row, optionally guarded on its current status."""
        key_attr = getattr(self.model, self.key_column)
        try:
            if expected_status is not None:
                result = self.db.execute(
                    update(self.model)
                    .where(key_attr == key, self.model.status == expected_status.value)
                    .values(**values)
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount == 0:
                    self.db.rollback()
                    current = self._row(key)
                    found = current.status if current else "missing"
                    raise PreconditionError(
                        f"{self.entity_name} {key} is {found}, expected {expected_status.value}",
                        key=key,
                        expected=expected_status.value,
                        actual=found,
                    )
            else:
                row = self._row(key)
                if row is None:
                    row = self.model(**{self.key_column: key})
                    self.db.add(row)
                for name, value in values.items():
                    setattr(row, name, value)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise


class ExpenseRepository(_SqlRepository):
    model = ExpenseDB
    key_column = "expense_id"
    entity_name = "Expense"

    def __init__(self, db: Session, receipts: "ReceiptRepository" = None):
        super().__init__(db)
        self.receipts = receipts or ReceiptRepository(db)

    def get(self, expense_id: str) -> Optional[Expense]:
        row = self._row(expense_id)
        return self._to_domain(row) if row else None

    def save(self, expense: Expense, expected_status: Optional[ExpenseStatus] = None) -> Expense:
        self._write(expense.id, self._to_values(expense), expected_status)
        return expense

    def find_by_query(self, status: Optional[ExpenseStatus] = None, submitter_id: Optional[str] = None) -> List[Expense]:
        query = self.db.query(ExpenseDB)
        if status:
            query = query.filter(ExpenseDB.status == status.value)
        if submitter_id:
            query = query.filter(ExpenseDB.submitter_id == submitter_id)
        return [self._to_domain(r) for r in query.order_by(ExpenseDB.id).all()]

    def _to_values(self, e: Expense) -> dict:
        return {
            "submitter_id": e.submitter_id,
            "employee_level": e.scope.level,
            "department": e.scope.department,
            "destination": e.scope.destination,
            "category": e.category.value,
            "vendor": e.vendor,
            "description": e.description,
            "original_amount": e.original_amount,
            "original_currency": e.original_currency,
            "normalized_amount": e.normalized_amount,
            "base_currency": e.base_currency,
            "exchange_rate": e.exchange_rate,
            "status": e.status.value,
            "policy_verdict": e.policy_verdict.model_dump(mode="json") if e.policy_verdict else None,
            "requires_secondary_approval": e.requires_secondary_approval,
            "transaction_id": e.transaction_id,
            "rejection_note": e.rejection_note,
            "created_at": e.created_at,
            "validated_at": e.validated_at,
            "submitted_at": e.submitted_at,
            "approved_at": e.approved_at,
            "processed_at": e.processed_at,
            "rejected_at": e.rejected_at,
        }

    def _to_domain(self, row: ExpenseDB) -> Expense:
        return Expense(
            id=row.expense_id,
            submitter_id=row.submitter_id,
            scope=PolicyScope(level=row.employee_level, department=row.department, destination=row.destination),
            category=ExpenseCategory(row.category),
            vendor=row.vendor,
            description=row.description,
            original_amount=_dec(row.original_amount),
            original_currency=row.original_currency,
            normalized_amount=_money(row.normalized_amount, row.base_currency),
            base_currency=row.base_currency,
            exchange_rate=_dec(row.exchange_rate),
            status=ExpenseStatus(row.status),
            receipt_ids=[r.id for r in self.receipts.find_by_query(expense_id=row.expense_id)],
            policy_verdict=PolicyVerdict.model_validate(row.policy_verdict) if row.policy_verdict else None,
            requires_secondary_approval=bool(row.requires_secondary_approval),
            transaction_id=row.transaction_id,
            rejection_note=row.rejection_note,
            created_at=row.created_at,
            validated_at=row.validated_at,
            submitted_at=row.submitted_at,
            approved_at=row.approved_at,
            processed_at=row.processed_at,
            rejected_at=row.rejected_at,
        )


class ReceiptRepository(_SqlRepository):
    model = ReceiptDB
    key_column = "receipt_id"
    entity_name = "Receipt"

    def get(self, receipt_id: str) -> Optional[Receipt]:
        row = self._row(receipt_id)
        return self._to_domain(row) if row else None

    def save(self, receipt: Receipt) -> Receipt:
        self._write(receipt.id, {
            "expense_id": receipt.expense_id,
            "image_ref": receipt.image_ref,
            "fields": receipt.fields.model_dump(mode="json"),
            "raw_text": receipt.raw_text,
            "ocr_confidence": Decimal(str(receipt.ocr_confidence)),
            "created_at": receipt.created_at,
        })
        return receipt

    def find_by_query(self, expense_id: Optional[str] = None) -> List[Receipt]:
        query = self.db.query(ReceiptDB)
        if expense_id:
            query = query.filter(ReceiptDB.expense_id == expense_id)
        return [self._to_domain(r) for r in query.order_by(ReceiptDB.id).all()]

    def _to_domain(self, row: ReceiptDB) -> Receipt:
        return Receipt(
            id=row.receipt_id,
            expense_id=row.expense_id,
            image_ref=row.image_ref,
            fields=ExtractedFields.model_validate(row.fields),
            raw_text=row.raw_text or "",
            ocr_confidence=float(row.ocr_confidence or 0),
            created_at=row.created_at,
        )


class ReimbursementRepository(_SqlRepository):
    model = ReimbursementDB
    key_column = "reimbursement_id"
    entity_name = "Reimbursement"

    def get(self, reimbursement_id: str) -> Optional[Reimbursement]:
        row = self._row(reimbursement_id)
        return self._to_domain(row) if row else None

    def get_by_expense(self, expense_id: str) -> Optional[Reimbursement]:
        row = self.db.query(ReimbursementDB).filter(ReimbursementDB.expense_id == expense_id).first()
        return self._to_domain(row) if row else None

    def save(self, reimbursement: Reimbursement, expected_status: Optional[ReimbursementStatus] = None) -> Reimbursement:
        try:
            self._write(reimbursement.id, self._to_values(reimbursement), expected_status)
        except IntegrityError as e:
            raise DuplicateReimbursementError(
                f"Reimbursement already exists for expense {reimbursement.expense_id}",
                expense_id=reimbursement.expense_id,
            ) from e
        return reimbursement

    def find_by_query(self, status: Optional[ReimbursementStatus] = None, employee_id: Optional[str] = None) -> List[Reimbursement]:
        query = self.db.query(ReimbursementDB)
        if status:
            query = query.filter(ReimbursementDB.status == status.value)
        if employee_id:
            query = query.filter(ReimbursementDB.employee_id == employee_id)
        return [self._to_domain(r) for r in query.order_by(ReimbursementDB.id).all()]

    def _to_values(self, r: Reimbursement) -> dict:
        return {
            "expense_id": r.expense_id,
            "employee_id": r.employee_id,
            "amount": r.amount,
            "currency": r.currency,
            "status": r.status.value,
            "idempotency_key": r.idempotency_key,
            "gateway_transaction_id": r.gateway_transaction_id,
            "failure_reason": r.failure_reason,
            "payroll_posted_at": r.payroll_posted_at,
            "payroll_reference": r.payroll_reference,
            "payroll_error": r.payroll_error,
            "submitted_at": r.submitted_at,
            "approved_at": r.approved_at,
            "processed_at": r.processed_at,
        }

    def _to_domain(self, row: ReimbursementDB) -> Reimbursement:
        return Reimbursement(
            id=row.reimbursement_id,
            expense_id=row.expense_id,
            employee_id=row.employee_id,
            amount=_money(row.amount, row.currency),
            currency=row.currency,
            status=ReimbursementStatus(row.status),
            idempotency_key=row.idempotency_key,
            gateway_transaction_id=row.gateway_transaction_id,
            failure_reason=row.failure_reason,
            payroll_posted_at=row.payroll_posted_at,
            payroll_reference=row.payroll_reference,
            payroll_error=row.payroll_error,
            submitted_at=row.submitted_at,
            approved_at=row.approved_at,
            processed_at=row.processed_at,
        )


class PolicyRepository(_SqlRepository):
    model = PolicyDB
    key_column = "policy_id"
    entity_name = "Policy"

    def get(self, policy_id: str) -> Optional[Policy]:
        row = self._row(policy_id)
        return self._to_domain(row) if row else None

    def save(self, policy: Policy) -> Policy:
        self._write(policy.id, {
            "name": policy.name,
            "employee_level": policy.scope.level,
            "department": policy.scope.department,
            "destination": policy.scope.destination,
            "allowed_categories": sorted(c.value for c in policy.allowed_categories),
            "max_amount_per_expense": policy.max_amount_per_expense,
            "approval_threshold": policy.approval_threshold,
            "receipt_required_categories": sorted(c.value for c in policy.receipt_required_categories),
            "receipt_required_above": policy.receipt_required_above,
            "priority": policy.priority,
            "active": policy.active,
        })
        return policy

    def find_by_query(self, active: Optional[bool] = True) -> List[Policy]:
        query = self.db.query(PolicyDB)
        if active is not None:
            query = query.filter(PolicyDB.active == active)
        return [self._to_domain(r) for r in query.order_by(PolicyDB.priority, PolicyDB.id).all()]

    def _to_domain(self, row: PolicyDB) -> Policy:
        return Policy(
            id=row.policy_id,
            name=row.name,
            scope=PolicyScope(level=row.employee_level, department=row.department, destination=row.destination),
            allowed_categories={ExpenseCategory(c) for c in (row.allowed_categories or [])},
            max_amount_per_expense=_dec(row.max_amount_per_expense),
            approval_threshold=_dec(row.approval_threshold),
            receipt_required_categories={ExpenseCategory(c) for c in (row.receipt_required_categories or [])},
            receipt_required_above=_dec(row.receipt_required_above),
            priority=row.priority if row.priority is not None else 100,
            active=bool(row.active),
        )
