"""Maps pipeline errors onto HTTP responses."""

from fastapi import HTTPException

from services.exceptions import (
    ExpensePipelineError,
    ExtractionError,
    GatewayTimeoutError,
    ImageLoadError,
    IncompleteExtractionError,
    NotFoundError,
    OcrEngineError,
    PolicyViolationError,
    PreconditionError,
    RateUnavailableError,
    SettlementError,
    IntegrationError,
)

# Checked in order: subclasses before their parents
STATUS_CODES = [
    (NotFoundError, 404),
    (PreconditionError, 409),
    (IncompleteExtractionError, 422),
    (ImageLoadError, 422),
    (OcrEngineError, 503),
    (ExtractionError, 422),
    (PolicyViolationError, 422),
    (RateUnavailableError, 503),
    (GatewayTimeoutError, 504),
    (SettlementError, 502),
    (IntegrationError, 502),
]


def to_http_exception(error: ExpensePipelineError) -> HTTPException:
    status_code = next((code for kind, code in STATUS_CODES if isinstance(error, kind)), 500)
    detail = error.to_dict()
    if isinstance(error, IncompleteExtractionError) and error.receipt is not None:
        detail["receipt_id"] = error.receipt.id
        detail["fields"] = error.receipt.fields.model_dump(mode="json")
    return HTTPException(status_code=status_code, detail=detail)
