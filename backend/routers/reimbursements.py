"""
Reimbursement API endpoints.
Creates reimbursements for approved expenses and pays them out.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from database import get_db
from models.reimbursement import ProcessOutcome, ReimbursementCreate, ReimbursementResponse, ReimbursementStatus
from routers.errors import to_http_exception
from services.exceptions import ExpensePipelineError
from services.pipeline import Pipeline, get_pipeline

router = APIRouter()


def _reimbursement(reimbursement) -> ReimbursementResponse:
    return ReimbursementResponse.model_validate(reimbursement.model_dump())


@router.post("/", response_model=ReimbursementResponse)
async def create_reimbursement(
    request: ReimbursementCreate,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Create the (single) Pending reimbursement for an Approved expense."""
    try:
        return _reimbursement(pipeline.reimbursement_service(db).create_reimbursement(request))
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.get("/", response_model=list[ReimbursementResponse])
async def list_reimbursements(
    status: Optional[ReimbursementStatus] = Query(None),
    employee_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    items = pipeline.reimbursement_service(db).list(status=status, employee_id=employee_id)
    return [_reimbursement(r) for r in items]


@router.get("/{reimbursement_id}", response_model=ReimbursementResponse)
async def get_reimbursement(
    reimbursement_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        return _reimbursement(pipeline.reimbursement_service(db).get(reimbursement_id))
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.post("/{reimbursement_id}/process", response_model=ProcessOutcome)
async def process_reimbursement(
    reimbursement_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Charge the gateway and post to payroll.

    Safe to retry: the same idempotency key is sent on every attempt. A
    payroll failure after a successful charge is reported in
    ``payroll_error`` rather than as an error status.
    """
    try:
        return await pipeline.reimbursement_service(db).process_reimbursement(reimbursement_id)
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.post("/{reimbursement_id}/payroll", response_model=ProcessOutcome)
async def retry_payroll(
    reimbursement_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Re-post a settled reimbursement to payroll after an integration failure."""
    try:
        return await pipeline.reimbursement_service(db).retry_payroll(reimbursement_id)
    except ExpensePipelineError as e:
        raise to_http_exception(e)
