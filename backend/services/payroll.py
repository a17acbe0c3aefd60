"""
Payroll Adapter - posts settled reimbursements to the external payroll ledger.

The ledger deduplicates by reference id, so the adapter always passes the
reimbursement id and may safely retry (at-least-once delivery). A payroll
failure never touches the settled charge: it surfaces as IntegrationError
for manual reconciliation.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Protocol

import httpx

from models.reimbursement import PayrollAck, Reimbursement, ReimbursementStatus
from services.exceptions import IntegrationError, PreconditionError
from services.retry import retry_async

logger = logging.getLogger("ExpenseFlow.Payroll")


class PayrollClient(Protocol):
    async def post_reimbursement(
        self, employee_id: str, amount: Decimal, currency: str, posted_date: date, reference_id: str,
    ) -> PayrollAck:
        ...


class _PayrollUnavailable(Exception):
    """Retryable ledger failure (transport error or 5xx)."""


class HttpPayrollClient:
    """Payroll ledger REST API (``POST /reimbursements``)."""

    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def post_reimbursement(
        self, employee_id: str, amount: Decimal, currency: str, posted_date: date, reference_id: str,
    ) -> PayrollAck:
        url = f"{self.base_url}/reimbursements"
        headers = {"Idempotency-Key": reference_id}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "employee_id": employee_id,
            "amount": str(amount),
            "currency": currency,
            "date": posted_date.isoformat(),
            "reference_id": reference_id,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    resp = await client.post(url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise _PayrollUnavailable(f"payroll unreachable: {e}") from e

        if resp.status_code >= 500:
            raise _PayrollUnavailable(f"HTTP {resp.status_code}")
        # 409 means the ledger already holds this reference
        if resp.status_code == 409:
            return PayrollAck(reference_id=reference_id, duplicate=True)
        if resp.status_code >= 400:
            raise IntegrationError(
                f"Payroll rejected {reference_id}: HTTP {resp.status_code} {resp.text}",
                reimbursement_id=reference_id,
            )
        try:
            data = resp.json() if resp.content else {}
        except ValueError as e:
            raise IntegrationError(
                f"Payroll sent an unreadable acknowledgement for {reference_id}: HTTP {resp.status_code} {resp.text[:200]}",
                reimbursement_id=reference_id,
            ) from e
        if not isinstance(data, dict):
            raise IntegrationError(
                f"Payroll sent an unexpected acknowledgement for {reference_id}",
                reimbursement_id=reference_id,
            )
        return PayrollAck(
            reference_id=reference_id,
            external_id=data.get("id"),
            duplicate=bool(data.get("duplicate", False)),
        )


class SimulatedPayrollLedger:
    """In-process ledger keyed by reference id."""

    def __init__(self):
        self.entries: Dict[str, dict] = {}
        self.post_calls = 0

    async def post_reimbursement(
        self, employee_id: str, amount: Decimal, currency: str, posted_date: date, reference_id: str,
    ) -> PayrollAck:
        self.post_calls += 1
        if reference_id in self.entries:
            entry = self.entries[reference_id]
            return PayrollAck(reference_id=reference_id, external_id=entry["external_id"], duplicate=True)

        external_id = f"PAY-{len(self.entries) + 1:06d}"
        self.entries[reference_id] = {
            "employee_id": employee_id,
            "amount": amount,
            "currency": currency,
            "date": posted_date,
            "external_id": external_id,
        }
        logger.info(f"📒 [SIM] Payroll entry {external_id}: {employee_id} {amount} {currency}")
        return PayrollAck(reference_id=reference_id, external_id=external_id)


class PayrollAdapter:
    """Posts Processed reimbursements with bounded retry."""

    def __init__(self, client: PayrollClient, max_attempts: int = 3, backoff_seconds: float = 0.5, sleep=asyncio.sleep):
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def post_to_payroll(self, reimbursement: Reimbursement) -> PayrollAck:
        if reimbursement.status != ReimbursementStatus.PROCESSED:
            raise PreconditionError(
                f"Reimbursement {reimbursement.id} is {reimbursement.status.value}; only Processed can be posted",
                reimbursement_id=reimbursement.id,
                status=reimbursement.status.value,
            )

        processed_on = (reimbursement.processed_at or datetime.now(timezone.utc)).date()
        try:
            ack = await retry_async(
                lambda: self.client.post_reimbursement(
                    reimbursement.employee_id,
                    reimbursement.amount,
                    reimbursement.currency,
                    processed_on,
                    reimbursement.id,
                ),
                attempts=self.max_attempts,
                base_delay=self.backoff_seconds,
                retry_on=(_PayrollUnavailable, httpx.TransportError),
                label=f"payroll post {reimbursement.id}",
                sleep=self._sleep,
            )
        except (_PayrollUnavailable, httpx.TransportError) as e:
            raise IntegrationError(
                f"Payroll post for {reimbursement.id} failed after {self.max_attempts} attempt(s): {e}",
                reimbursement_id=reimbursement.id,
            ) from e

        logger.info(
            f"📒 Posted {reimbursement.id} to payroll"
            + (f" as {ack.external_id}" if ack.external_id else "")
            + (" (duplicate)" if ack.duplicate else "")
        )
        return ack
