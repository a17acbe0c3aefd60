"""Audit trail API endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from services.audit import AuditTrail

router = APIRouter()


@router.get("/")
async def get_audit_trail(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    expense_id: str = Query(None),
    reimbursement_id: str = Query(None),
    actor: str = Query(None),
    db: Session = Depends(get_db),
):
    """
    Get the audit trail, newest first.
    Every transition, payout and payroll post is logged here.
    """
    trail = AuditTrail(db)
    logs = trail.entries(
        expense_id=expense_id,
        reimbursement_id=reimbursement_id,
        actor=actor,
        skip=skip,
        limit=limit,
    )
    return {
        "total": trail.count(expense_id=expense_id, reimbursement_id=reimbursement_id, actor=actor),
        "logs": [
            {
                "id": log.id,
                "expense_id": log.expense_id,
                "reimbursement_id": log.reimbursement_id,
                "action": log.action,
                "actor": log.actor,
                "details": log.details,
                "transaction_id": log.transaction_id,
                "timestamp": log.timestamp.isoformat() if log.timestamp else None,
            }
            for log in logs
        ],
    }


@router.get("/stats")
async def get_audit_stats(db: Session = Depends(get_db)):
    """Entry counts per action (settled, payroll_failed, ...)."""
    trail = AuditTrail(db)
    return {"total": trail.count(), "by_action": trail.action_counts()}
