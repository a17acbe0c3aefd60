import asyncio
from decimal import Decimal

import pytest

from conftest import draft
from models.expense import ExpenseStatus, ExpenseUpdate
from models.expense_category import ExpenseCategory
from models.policy import Policy, ReasonKind
from services.audit import AuditTrail
from services.exceptions import (
    IncompleteExtractionError,
    NotFoundError,
    PolicyViolationError,
    PreconditionError,
    RateUnavailableError,
)
from services.repositories import PolicyRepository


@pytest.mark.asyncio
async def test_within_policy_expense_is_validated(db, pipeline, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("500", "USD"))
    assert expense.status == ExpenseStatus.DRAFT
    assert expense.normalized_amount is None

    validated = await service.validate_expense(expense.id)

    stored = service.get(expense.id)
    assert validated.status == ExpenseStatus.VALIDATED
    assert stored.status == ExpenseStatus.VALIDATED
    assert stored.policy_verdict.passed
    assert stored.normalized_amount == Decimal("500.00")
    assert stored.base_currency == "USD"
    assert stored.validated_at is not None


@pytest.mark.asyncio
async def test_over_limit_expense_is_rejected(db, pipeline, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("600", "USD"))

    with pytest.raises(PolicyViolationError) as exc:
        await service.validate_expense(expense.id)

    assert exc.value.verdict.kinds() == [ReasonKind.EXCEEDS_POLICY_LIMIT]
    assert exc.value.to_dict()["reasons"][0]["message"].startswith("exceeds policy limit")
    stored = service.get(expense.id)
    assert stored.status == ExpenseStatus.REJECTED
    assert not stored.policy_verdict.passed
    assert "exceeds policy limit" in stored.rejection_note


@pytest.mark.asyncio
async def test_rate_outage_leaves_expense_in_draft(db, pipeline, rate_provider, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("100", "EUR"))
    rate_provider.fail = True

    with pytest.raises(RateUnavailableError):
        await service.validate_expense(expense.id)

    stored = service.get(expense.id)
    assert stored.status == ExpenseStatus.DRAFT
    assert stored.normalized_amount is None
    assert stored.policy_verdict is None


@pytest.mark.asyncio
async def test_foreign_currency_is_normalized_to_base(db, pipeline, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("100", "EUR"))
    validated = await service.validate_expense(expense.id)
    assert validated.normalized_amount == Decimal("108.70")
    assert validated.original_amount == Decimal("100")
    assert validated.original_currency == "EUR"


@pytest.mark.asyncio
async def test_submit_requires_validated(db, pipeline, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("50"))

    with pytest.raises(PreconditionError):
        await service.submit_expense(expense.id)
    assert service.get(expense.id).status == ExpenseStatus.DRAFT

    await service.validate_expense(expense.id)
    submitted = await service.submit_expense(expense.id)
    assert submitted.status == ExpenseStatus.SUBMITTED

    with pytest.raises(PreconditionError):
        await service.submit_expense(expense.id)


@pytest.mark.asyncio
async def test_mark_processed_requires_approved(db, pipeline, meals_policy):
    lifecycle = pipeline.lifecycle(db)
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("50"))
    await service.validate_expense(expense.id)
    await service.submit_expense(expense.id)

    with pytest.raises(PreconditionError):
        lifecycle.mark_processed(expense.id, "txn_123")
    assert service.get(expense.id).status == ExpenseStatus.SUBMITTED

    service.approve_expense(expense.id)
    processed = lifecycle.mark_processed(expense.id, "txn_123")
    assert processed.status == ExpenseStatus.PROCESSED
    assert processed.transaction_id == "txn_123"


@pytest.mark.asyncio
async def test_approve_and_reject_only_from_allowed_states(db, pipeline, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("50"))

    with pytest.raises(PreconditionError):
        service.approve_expense(expense.id)
    with pytest.raises(PreconditionError):
        service.reject_expense(expense.id)

    await service.validate_expense(expense.id)
    with pytest.raises(PreconditionError):
        service.approve_expense(expense.id)

    rejected = service.reject_expense(expense.id, note="duplicate of EXP-0001")
    assert rejected.status == ExpenseStatus.REJECTED
    with pytest.raises(PreconditionError):
        await service.validate_expense(expense.id)


@pytest.mark.asyncio
async def test_flagged_expense_needs_elevated_approval(db, pipeline):
    PolicyRepository(db).save(Policy(
        id="POL-SOFT",
        name="Meals with ceiling",
        allowed_categories={ExpenseCategory.MEALS},
        max_amount_per_expense=Decimal("500"),
        approval_threshold=Decimal("1000"),
    ))
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("750"))

    validated = await service.validate_expense(expense.id)
    assert validated.status == ExpenseStatus.VALIDATED
    assert validated.requires_secondary_approval
    assert validated.policy_verdict.kinds() == [ReasonKind.REQUIRES_ADDITIONAL_APPROVAL]

    await service.submit_expense(expense.id)
    with pytest.raises(PreconditionError):
        service.approve_expense(expense.id, actor="EMP0006")
    assert service.get(expense.id).status == ExpenseStatus.SUBMITTED

    approved = service.approve_expense(expense.id, actor="EMP0008", elevated=True)
    assert approved.status == ExpenseStatus.APPROVED


@pytest.mark.asyncio
async def test_revalidation_picks_up_new_rates_and_keeps_identity(
    db, pipeline, rate_provider, clock, meals_policy, receipt_image,
):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("100", "EUR"))
    receipt = await service.upload_receipt(expense.id, receipt_image, image_ref="r.png")
    first = await service.validate_expense(expense.id)

    rate_provider.rates["EUR"] = {"USD": Decimal("1.20")}
    clock.advance(3600)
    second = await service.validate_expense(expense.id)

    assert second.id == first.id
    assert second.status == ExpenseStatus.VALIDATED
    assert first.normalized_amount == Decimal("108.70")
    assert second.normalized_amount == Decimal("120.00")
    assert second.receipt_ids == [receipt.id]
    assert AuditTrail(db).actions(expense_id=expense.id).count("revalidated") == 1


@pytest.mark.asyncio
async def test_concurrent_reject_discards_inflight_validation(db, pipeline, rate_provider, clock, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("100", "EUR"))
    await service.validate_expense(expense.id)

    # Expire the cached rate and hold the refetch open
    clock.advance(3600)
    rate_provider.gate.clear()
    revalidation = asyncio.create_task(service.validate_expense(expense.id))
    await asyncio.sleep(0)

    service.reject_expense(expense.id, actor="EMP0006", note="not business travel")
    rate_provider.gate.set()

    with pytest.raises(PreconditionError):
        await revalidation

    stored = service.get(expense.id)
    assert stored.status == ExpenseStatus.REJECTED
    assert stored.rejection_note == "not business travel"


@pytest.mark.asyncio
async def test_update_returns_validated_expense_to_draft(db, pipeline, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("100"))
    await service.validate_expense(expense.id)

    updated = service.update_expense(expense.id, ExpenseUpdate(amount=Decimal("120"), vendor="Harbor Grill"))

    assert updated.status == ExpenseStatus.DRAFT
    stored = service.get(expense.id)
    assert stored.original_amount == Decimal("120")
    assert stored.vendor == "Harbor Grill"
    assert stored.normalized_amount is None
    assert stored.policy_verdict is None

    await service.validate_expense(expense.id)
    await service.submit_expense(expense.id)
    with pytest.raises(PreconditionError):
        service.update_expense(expense.id, ExpenseUpdate(description="late edit"))


@pytest.mark.asyncio
async def test_receipt_without_date_is_kept_for_manual_entry(db, pipeline, ocr_engine, receipt_image):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("42.10"))
    ocr_engine.text = "HARBOR GRILL\nFish tacos\nTotal $42.10\n"

    with pytest.raises(IncompleteExtractionError) as exc:
        await service.upload_receipt(expense.id, receipt_image, image_ref="uploads/r1.png")

    receipt = exc.value.receipt
    assert receipt is not None
    stored = service.receipts_for(expense.id)
    assert [r.id for r in stored] == [receipt.id]
    assert not stored[0].fields.date.resolved
    assert stored[0].fields.amount.value == Decimal("42.10")
    assert stored[0].fields.vendor.value == "Harbor Grill"
    assert stored[0].raw_text == ocr_engine.text
    assert service.get(expense.id).status == ExpenseStatus.DRAFT


@pytest.mark.asyncio
async def test_receipts_are_frozen_after_submission(db, pipeline, meals_policy, receipt_image):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("500"))
    await service.validate_expense(expense.id)
    await service.submit_expense(expense.id)

    with pytest.raises(PreconditionError):
        await service.upload_receipt(expense.id, receipt_image)
    assert service.receipts_for(expense.id) == []


@pytest.mark.asyncio
async def test_unknown_expense(db, pipeline):
    with pytest.raises(NotFoundError):
        await pipeline.expense_service(db).validate_expense("EXP-MISSING")


@pytest.mark.asyncio
async def test_transitions_are_audited(db, pipeline, meals_policy):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft("50"))
    await service.validate_expense(expense.id)
    await service.submit_expense(expense.id)
    service.approve_expense(expense.id)

    assert AuditTrail(db).actions(expense_id=expense.id) == ["created", "validated", "submitted", "approved"]
