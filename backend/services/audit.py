"""Audit trail - every transition, payout and payroll post is recorded here."""

import logging
from typing import Dict, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from database import AuditLogDB

logger = logging.getLogger("ExpenseFlow.Audit")


class AuditTrail:
    """Append-only writer/reader over the audit_logs table."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        action: str,
        actor: str,
        expense_id: Optional[str] = None,
        reimbursement_id: Optional[str] = None,
        details: Optional[dict] = None,
        transaction_id: Optional[str] = None,
    ) -> AuditLogDB:
        entry = AuditLogDB(
            expense_id=expense_id,
            reimbursement_id=reimbursement_id,
            action=action,
            actor=actor,
            details=details,
            transaction_id=transaction_id,
        )
        self.db.add(entry)
        self.db.commit()
        logger.debug(f"audit: {action} by {actor} (expense={expense_id}, reimbursement={reimbursement_id})")
        return entry

    def _query(
        self,
        expense_id: Optional[str] = None,
        reimbursement_id: Optional[str] = None,
        actor: Optional[str] = None,
    ):
        query = self.db.query(AuditLogDB)
        if expense_id:
            query = query.filter(AuditLogDB.expense_id == expense_id)
        if reimbursement_id:
            query = query.filter(AuditLogDB.reimbursement_id == reimbursement_id)
        if actor:
            query = query.filter(AuditLogDB.actor == actor)
        return query

    def entries(
        self,
        expense_id: Optional[str] = None,
        reimbursement_id: Optional[str] = None,
        actor: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[AuditLogDB]:
        query = self._query(expense_id, reimbursement_id, actor)
        return query.order_by(desc(AuditLogDB.id)).offset(skip).limit(limit).all()

    def count(
        self,
        expense_id: Optional[str] = None,
        reimbursement_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> int:
        return self._query(expense_id, reimbursement_id, actor).count()

    def action_counts(self) -> Dict[str, int]:
        rows = self.db.query(AuditLogDB.action, func.count(AuditLogDB.id)).group_by(AuditLogDB.action).all()
        return {action: n for action, n in rows}

    def actions(self, expense_id: Optional[str] = None, reimbursement_id: Optional[str] = None) -> List[str]:
        """Actions in chronological order (oldest first)."""
        rows = self.entries(expense_id=expense_id, reimbursement_id=reimbursement_id, limit=1000)
        return [r.action for r in reversed(rows)]
