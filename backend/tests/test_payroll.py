import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from conftest import approved_expense, no_sleep
from models.reimbursement import Reimbursement, ReimbursementCreate, ReimbursementStatus
from services.audit import AuditTrail
from services.exceptions import IntegrationError, PreconditionError
from services.payroll import HttpPayrollClient, PayrollAdapter, SimulatedPayrollLedger


def processed(**overrides) -> Reimbursement:
    values = dict(
        id="RMB-0001",
        expense_id="EXP-0001",
        employee_id="EMP0001",
        amount=Decimal("108.70"),
        currency="USD",
        status=ReimbursementStatus.PROCESSED,
        idempotency_key="reimb_abc",
        gateway_transaction_id="txn_1",
        processed_at=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return Reimbursement(**values)


class DownPayroll:
    def __init__(self):
        self.calls = 0

    async def post_reimbursement(self, employee_id, amount, currency, posted_date, reference_id):
        self.calls += 1
        raise httpx.ConnectError("payroll unreachable")


@pytest.mark.asyncio
async def test_post_retries_transient_failures_with_stable_reference():
    bodies = []
    responses = iter([httpx.Response(503), httpx.Response(500), httpx.Response(201, json={"id": "PAY-77"})])

    def handler(request):
        bodies.append(json.loads(request.content))
        return next(responses)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = PayrollAdapter(
            HttpPayrollClient("https://payroll.test/api", client=client),
            max_attempts=3, backoff_seconds=0, sleep=no_sleep,
        )
        ack = await adapter.post_to_payroll(processed())

    assert ack.external_id == "PAY-77"
    assert len(bodies) == 3
    assert {b["reference_id"] for b in bodies} == {"RMB-0001"}
    assert bodies[0] == {
        "employee_id": "EMP0001",
        "amount": "108.70",
        "currency": "USD",
        "date": "2026-03-15",
        "reference_id": "RMB-0001",
    }


@pytest.mark.asyncio
async def test_duplicate_post_is_acknowledged():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(409))) as client:
        ack = await PayrollAdapter(HttpPayrollClient("https://payroll.test/api", client=client)).post_to_payroll(processed())
    assert ack.duplicate


@pytest.mark.asyncio
async def test_exhausted_retries_raise_integration_error():
    client = DownPayroll()
    adapter = PayrollAdapter(client, max_attempts=3, backoff_seconds=0, sleep=no_sleep)
    with pytest.raises(IntegrationError):
        await adapter.post_to_payroll(processed())
    assert client.calls == 3


@pytest.mark.asyncio
async def test_rejected_post_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="unknown employee")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = PayrollAdapter(HttpPayrollClient("https://payroll.test/api", client=client), sleep=no_sleep)
        with pytest.raises(IntegrationError):
            await adapter.post_to_payroll(processed())
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_only_processed_reimbursements_are_posted():
    adapter = PayrollAdapter(SimulatedPayrollLedger())
    with pytest.raises(PreconditionError):
        await adapter.post_to_payroll(processed(status=ReimbursementStatus.PENDING, gateway_transaction_id=None))


@pytest.mark.asyncio
async def test_simulated_ledger_deduplicates_by_reference():
    ledger = SimulatedPayrollLedger()
    adapter = PayrollAdapter(ledger)
    first = await adapter.post_to_payroll(processed())
    second = await adapter.post_to_payroll(processed())
    assert not first.duplicate
    assert second.duplicate
    assert second.external_id == first.external_id
    assert len(ledger.entries) == 1


@pytest.mark.asyncio
async def test_payroll_failure_never_rolls_back_the_charge(db, pipeline, gateway, meals_policy):
    pipeline.payroll_client = DownPayroll()
    expense = await approved_expense(pipeline, db)
    service = pipeline.reimbursement_service(db)
    reimbursement = service.create_reimbursement(ReimbursementCreate(expense_id=expense.id))

    outcome = await service.process_reimbursement(reimbursement.id)

    assert outcome.settlement.success
    assert outcome.payroll is None
    assert outcome.payroll_error["code"] == "PAYROLL_INTEGRATION_FAILED"
    stored = service.get(reimbursement.id)
    assert stored.status == ReimbursementStatus.PROCESSED
    assert stored.gateway_transaction_id == outcome.settlement.transaction_id
    assert stored.payroll_error
    assert stored.payroll_posted_at is None
    assert len(gateway.charges) == 1
    assert AuditTrail(db).actions(reimbursement_id=reimbursement.id)[-1] == "payroll_failed"

    # Manual reconciliation once payroll is back
    pipeline.payroll_client = SimulatedPayrollLedger()
    retried = await pipeline.reimbursement_service(db).retry_payroll(reimbursement.id)
    assert retried.payroll is not None
    assert retried.reimbursement.payroll_error is None
    assert retried.reimbursement.payroll_reference
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_unreadable_ack_is_recorded_for_reconciliation(db, pipeline, gateway, meals_policy):
    expense = await approved_expense(pipeline, db)
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="OK"))) as client:
        pipeline.payroll_client = HttpPayrollClient("https://payroll.test/api", client=client)
        service = pipeline.reimbursement_service(db)
        reimbursement = service.create_reimbursement(ReimbursementCreate(expense_id=expense.id))
        outcome = await service.process_reimbursement(reimbursement.id)

    assert outcome.settlement.success
    assert outcome.payroll is None
    assert outcome.payroll_error["code"] == "PAYROLL_INTEGRATION_FAILED"
    stored = service.get(reimbursement.id)
    assert stored.status == ReimbursementStatus.PROCESSED
    assert "unreadable" in stored.payroll_error
    assert len(gateway.charges) == 1
