"""
Expense API endpoints.
Handles drafting, receipt upload (OCR), validation, submission and approval.
"""

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.orm import Session
from typing import Optional
import os
import uuid
import logging

from database import get_db
from models.expense import ApprovalRequest, ExpenseCreate, ExpenseResponse, ExpenseStatus, ExpenseUpdate
from models.receipt import ReceiptResponse
from routers.errors import to_http_exception
from services.exceptions import ExpensePipelineError
from services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger("ExpenseFlow.ExpensesRouter")

router = APIRouter()

UPLOAD_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "uploads", "receipts")
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ALLOWED_TYPES = ["image/jpeg", "image/png", "image/gif", "image/webp", "image/tiff"]


def _expense(expense) -> ExpenseResponse:
    return ExpenseResponse.model_validate(expense.model_dump())


def _receipt(receipt) -> ReceiptResponse:
    return ReceiptResponse(
        id=receipt.id,
        expense_id=receipt.expense_id,
        image_ref=receipt.image_ref,
        fields=receipt.fields,
        ocr_confidence=receipt.ocr_confidence,
        missing_fields=receipt.fields.missing_required(),
        created_at=receipt.created_at,
    )


@router.post("/", response_model=ExpenseResponse)
async def create_expense(
    expense: ExpenseCreate,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Create a Draft expense. No validation is performed yet."""
    return _expense(pipeline.expense_service(db).create_expense(expense))


@router.get("/", response_model=list[ExpenseResponse])
async def list_expenses(
    status: Optional[ExpenseStatus] = Query(None),
    submitter_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    expenses = pipeline.expense_service(db).list(status=status, submitter_id=submitter_id)
    return [_expense(e) for e in expenses]


@router.get("/{expense_id}", response_model=ExpenseResponse)
async def get_expense(
    expense_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        return _expense(pipeline.expense_service(db).get(expense_id))
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.patch("/{expense_id}", response_model=ExpenseResponse)
async def update_expense(
    expense_id: str,
    update: ExpenseUpdate,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Edit a Draft or Validated expense. Validated expenses return to Draft."""
    try:
        return _expense(pipeline.expense_service(db).update_expense(expense_id, update))
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.post("/{expense_id}/validate", response_model=ExpenseResponse)
async def validate_expense(
    expense_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Normalize to the base currency and evaluate policy.
    Hard violations reject the expense (422 with the reasons list).
    """
    try:
        return _expense(await pipeline.expense_service(db).validate_expense(expense_id))
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.post("/{expense_id}/submit", response_model=ExpenseResponse)
async def submit_expense(
    expense_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        return _expense(await pipeline.expense_service(db).submit_expense(expense_id))
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.post("/{expense_id}/approve", response_model=ExpenseResponse)
async def approve_expense(
    expense_id: str,
    request: ApprovalRequest = ApprovalRequest(),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Approve a Submitted expense. Flagged expenses need ``elevated: true``."""
    try:
        expense = pipeline.expense_service(db).approve_expense(
            expense_id, actor=request.actor, elevated=request.elevated, note=request.note,
        )
        return _expense(expense)
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.post("/{expense_id}/reject", response_model=ExpenseResponse)
async def reject_expense(
    expense_id: str,
    request: ApprovalRequest = ApprovalRequest(),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        expense = pipeline.expense_service(db).reject_expense(expense_id, actor=request.actor, note=request.note)
        return _expense(expense)
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.get("/{expense_id}/receipts", response_model=list[ReceiptResponse])
async def list_receipts(
    expense_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        return [_receipt(r) for r in pipeline.expense_service(db).receipts_for(expense_id)]
    except ExpensePipelineError as e:
        raise to_http_exception(e)


@router.post("/{expense_id}/receipts", response_model=ReceiptResponse)
async def upload_receipt(
    expense_id: str,
    file: Optional[UploadFile] = File(None),
    image_url: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Upload a receipt image (or give its URL) and run OCR on it.

    An unreadable amount, date or vendor still attaches the receipt and
    answers 422 with the partial fields so the client can complete them
    manually.
    """
    if file is None and not image_url:
        raise HTTPException(status_code=400, detail="Provide a receipt file or image_url")

    if file is not None:
        if file.content_type not in ALLOWED_TYPES:
            raise HTTPException(
                status_code=400,
                detail=f"File type '{file.content_type}' not allowed. Use JPEG, PNG, GIF, WEBP or TIFF."
            )
        contents = await file.read()
        if len(contents) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=400, detail="File too large. Maximum 10MB.")

        ext = file.filename.split(".")[-1] if file.filename and "." in file.filename else "jpg"
        filename = f"receipt_{uuid.uuid4().hex[:12]}.{ext}"
        os.makedirs(UPLOAD_DIR, exist_ok=True)
        filepath = os.path.join(UPLOAD_DIR, filename)
        with open(filepath, "wb") as f:
            f.write(contents)
        logger.info(f"📎 Receipt uploaded: {filename} ({len(contents)} bytes)")
        image, image_ref = contents, f"/uploads/receipts/{filename}"
    else:
        image, image_ref = image_url, image_url

    try:
        receipt = await pipeline.expense_service(db).upload_receipt(expense_id, image, image_ref=image_ref)
        return _receipt(receipt)
    except ExpensePipelineError as e:
        raise to_http_exception(e)
