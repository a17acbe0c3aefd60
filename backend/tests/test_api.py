from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app


@pytest.fixture
def client(db, pipeline, meals_policy):
    app.state.pipeline = pipeline
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def new_expense(client, amount="500", currency="USD"):
    resp = client.post("/api/expenses/", json={
        "submitter_id": "EMP0001",
        "amount": amount,
        "currency": currency,
        "category": "Meals",
        "vendor": "Blue Bottle Cafe",
    })
    assert resp.status_code == 200
    return resp.json()


def test_expense_to_payout_over_http(client, gateway, payroll_ledger):
    expense = new_expense(client, "100", "eur")
    assert expense["status"] == "Draft"
    assert expense["original_currency"] == "EUR"

    validated = client.post(f"/api/expenses/{expense['id']}/validate").json()
    assert validated["status"] == "Validated"
    assert Decimal(validated["normalized_amount"]) == Decimal("108.70")

    assert client.post(f"/api/expenses/{expense['id']}/submit").json()["status"] == "Submitted"
    approved = client.post(f"/api/expenses/{expense['id']}/approve", json={"actor": "EMP0006"}).json()
    assert approved["status"] == "Approved"

    reimbursement = client.post("/api/reimbursements/", json={"expense_id": expense["id"]}).json()
    assert reimbursement["status"] == "Pending"

    outcome = client.post(f"/api/reimbursements/{reimbursement['id']}/process").json()
    assert outcome["settlement"]["success"]
    assert outcome["reimbursement"]["status"] == "Processed"
    assert list(payroll_ledger.entries) == [reimbursement["id"]]

    actions = [e["action"] for e in client.get("/api/audit/", params={"expense_id": expense["id"]}).json()["logs"]]
    assert actions[-1] == "created"
    assert "settled" in actions

    stats = client.get("/api/audit/stats").json()
    assert stats["by_action"]["payroll_posted"] == 1


def test_policy_violation_is_422_with_reasons(client):
    expense = new_expense(client, "600")
    resp = client.post(f"/api/expenses/{expense['id']}/validate")

    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail["code"] == "POLICY_VIOLATION"
    assert [r["kind"] for r in detail["reasons"]] == ["exceeds_policy_limit"]
    assert client.get(f"/api/expenses/{expense['id']}").json()["status"] == "Rejected"


def test_illegal_transition_is_409(client):
    expense = new_expense(client)
    resp = client.post(f"/api/expenses/{expense['id']}/submit")
    assert resp.status_code == 409


def test_unknown_expense_is_404(client):
    assert client.get("/api/expenses/EXP-NOPE").status_code == 404


def test_incomplete_receipt_is_422_with_partial_fields(client, ocr_engine, receipt_image):
    expense = new_expense(client, "42.10")
    ocr_engine.text = "HARBOR GRILL\nTotal $42.10\n"

    resp = client.post(
        f"/api/expenses/{expense['id']}/receipts",
        files={"file": ("r.png", receipt_image, "image/png")},
    )

    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail["receipt_id"].startswith("RCT-")
    assert detail["fields"]["vendor"]["value"] == "Harbor Grill"
    assert detail["fields"]["date"]["value"] is None
    receipts = client.get(f"/api/expenses/{expense['id']}/receipts").json()
    assert [r["id"] for r in receipts] == [detail["receipt_id"]]
    assert receipts[0]["missing_fields"] == ["date"]


def test_upload_rejects_unsupported_type(client):
    expense = new_expense(client)
    resp = client.post(
        f"/api/expenses/{expense['id']}/receipts",
        files={"file": ("r.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 400
