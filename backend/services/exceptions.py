"""
Typed failures for the expense-to-payout pipeline.

Every error carries a stable ``code`` and the ``stage`` that produced it so
callers (routers, workers) can render a precise message without parsing
exception strings.
"""

from typing import List, Optional


class ExpensePipelineError(Exception):
    """Base class for every pipeline failure."""

    code: str = "PIPELINE_ERROR"
    stage: str = "pipeline"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            **{k: v for k, v in self.context.items() if v is not None},
        }


# --- Extraction ---

class ExtractionError(ExpensePipelineError):
    code = "EXTRACTION_FAILED"
    stage = "extraction"


class ImageLoadError(ExtractionError):
    """Receipt image is unreachable or not a readable image."""
    code = "IMAGE_LOAD_FAILED"


class OcrEngineError(ExtractionError):
    """OCR engine crashed or timed out."""
    code = "OCR_ENGINE_FAILED"


class IncompleteExtractionError(ExtractionError):
    """
    OCR ran but amount, date or vendor could not be parsed.

    Soft condition: the caller routes the receipt to manual entry. ``result``
    holds whatever was parsed (fields and raw text); ``receipt`` is set once
    the partial receipt has been persisted.
    """
    code = "EXTRACTION_INCOMPLETE"

    def __init__(self, message: str, result=None, missing: Optional[List[str]] = None, receipt=None):
        super().__init__(message, missing=missing or [])
        self.result = result
        self.fields = result.fields if result is not None else None
        self.missing = missing or []
        self.receipt = receipt


# --- Normalization ---

class ConversionError(ExpensePipelineError):
    code = "CONVERSION_FAILED"
    stage = "normalization"


class RateUnavailableError(ConversionError):
    """No usable rate for the requested currency pair."""
    code = "RATE_UNAVAILABLE"


# --- Policy ---

class PolicyViolationError(ExpensePipelineError):
    """Hard policy violation; the expense was rejected."""
    code = "POLICY_VIOLATION"
    stage = "policy"

    def __init__(self, message: str, verdict=None, expense_id: Optional[str] = None):
        reasons = [r.model_dump(mode="json") for r in verdict.reasons] if verdict else []
        super().__init__(message, expense_id=expense_id, reasons=reasons)
        self.verdict = verdict


# --- State ---

class PreconditionError(ExpensePipelineError):
    """Invalid state transition; nothing was mutated."""
    code = "PRECONDITION_FAILED"
    stage = "lifecycle"


class NotFoundError(PreconditionError):
    code = "NOT_FOUND"


class DuplicateReimbursementError(PreconditionError):
    code = "DUPLICATE_REIMBURSEMENT"
    stage = "settlement"


# --- Settlement ---

class SettlementError(ExpensePipelineError):
    code = "SETTLEMENT_FAILED"
    stage = "settlement"


class GatewayError(SettlementError):
    code = "GATEWAY_ERROR"


class GatewayTimeoutError(GatewayError):
    """
    Gateway did not answer in time. The charge may or may not exist, so the
    reimbursement stays Pending and the next attempt reuses the idempotency key.
    """
    code = "GATEWAY_TIMEOUT"


class GatewayDeclinedError(GatewayError):
    """Gateway definitively refused the charge; reimbursement is Failed."""
    code = "GATEWAY_DECLINED"


# --- Payroll ---

class IntegrationError(ExpensePipelineError):
    """Payroll post failed; the charge itself is never rolled back."""
    code = "PAYROLL_INTEGRATION_FAILED"
    stage = "payroll"
