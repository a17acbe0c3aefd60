"""
Settlement Processor - executes the payout for a reimbursement.

A reimbursement must never produce two successful charges. Three things
guarantee it:
  1. every attempt presents the same idempotency key, so a gateway that
     already accepted the charge returns it instead of charging again
  2. settle() refuses anything that is not Pending
  3. a process-wide in-flight set rejects a second concurrent attempt, and
     the final write is a compare-and-set on Pending

Gateway states map to reimbursement states:
  succeeded        -> Processed (transaction id recorded)
  requires_action  -> stays Pending, caller may retry later
  failed / decline -> Failed with the reason captured
  timeout          -> stays Pending, GatewayTimeoutError raised
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

from models.reimbursement import Reimbursement, ReimbursementStatus, SettlementResult
from services.audit import AuditTrail
from services.exceptions import (
    GatewayDeclinedError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    PreconditionError,
)
from services.expense_lifecycle import ExpenseLifecycle
from services.payment_gateway import Charge, GatewayStatus, PaymentGateway, TERMINAL_STATUSES

logger = logging.getLogger("ExpenseFlow.Settlement")


class SettlementProcessor:
    """Idempotent payout of Pending reimbursements."""

    def __init__(
        self,
        reimbursements,
        lifecycle: ExpenseLifecycle,
        gateway: PaymentGateway,
        audit: Optional[AuditTrail] = None,
        confirm_attempts: int = 5,
        confirm_interval_seconds: float = 1.0,
        in_flight: Optional[Set[str]] = None,
        sleep=asyncio.sleep,
    ):
        self.reimbursements = reimbursements
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.audit = audit
        self.confirm_attempts = max(1, confirm_attempts)
        self.confirm_interval_seconds = confirm_interval_seconds
        # Shared across processors in one process
        self._in_flight = in_flight if in_flight is not None else set()
        self._sleep = sleep

    async def settle(self, reimbursement_id: str) -> SettlementResult:
        """
        Charge the gateway for one Pending reimbursement.

        Raises:
            PreconditionError: not Pending, no idempotency key, or already in flight
            GatewayTimeoutError / GatewayError: outcome unknown, still Pending
            GatewayDeclinedError: charge refused, reimbursement now Failed
        """
        reimbursement = self.reimbursements.get(reimbursement_id)
        if reimbursement is None:
            raise NotFoundError(f"Reimbursement {reimbursement_id} not found", reimbursement_id=reimbursement_id)

        if reimbursement.status != ReimbursementStatus.PENDING:
            raise PreconditionError(
                f"Reimbursement {reimbursement_id} is {reimbursement.status.value}, expected Pending",
                reimbursement_id=reimbursement_id,
                status=reimbursement.status.value,
                transaction_id=reimbursement.gateway_transaction_id,
            )
        if not reimbursement.idempotency_key:
            raise PreconditionError(
                f"Reimbursement {reimbursement_id} has no idempotency key",
                reimbursement_id=reimbursement_id,
            )
        if reimbursement_id in self._in_flight:
            raise PreconditionError(
                f"Settlement of {reimbursement_id} is already in progress",
                reimbursement_id=reimbursement_id,
            )

        self._in_flight.add(reimbursement_id)
        try:
            return await self._settle(reimbursement)
        finally:
            self._in_flight.discard(reimbursement_id)

    async def _settle(self, reimbursement: Reimbursement) -> SettlementResult:
        logger.info(
            f"💸 Settling {reimbursement.id}: {reimbursement.amount} {reimbursement.currency} "
            f"(key {reimbursement.idempotency_key[:16]}...)"
        )
        try:
            charge = await self.gateway.create_charge(
                reimbursement.amount,
                reimbursement.currency,
                reimbursement.idempotency_key,
                {
                    "reimbursement_id": reimbursement.id,
                    "expense_id": reimbursement.expense_id,
                    "employee_id": reimbursement.employee_id,
                },
            )
            status = charge.status
            if status not in TERMINAL_STATUSES:
                status = await self._poll(charge)
        except GatewayDeclinedError as e:
            self._mark_failed(reimbursement, e.message)
            raise
        except GatewayError as e:
            logger.warning(f"⏳ Settlement of {reimbursement.id} outcome unknown ({e.message}); left Pending")
            self._record("settlement_retryable", reimbursement, {"error": e.to_dict()})
            raise

        if status == GatewayStatus.SUCCEEDED:
            return self._mark_processed(reimbursement, charge)

        if status == GatewayStatus.REQUIRES_ACTION:
            logger.warning(f"⏳ Charge {charge.transaction_id} for {reimbursement.id} requires action; left Pending")
            self._record("settlement_requires_action", reimbursement, {"charge": charge.transaction_id})
            return SettlementResult(
                reimbursement_id=reimbursement.id,
                success=False,
                status=ReimbursementStatus.PENDING,
                gateway_status=status.value,
                retryable=True,
                reason="gateway requires additional action",
            )

        reason = charge.failure_reason or f"gateway reported {status.value}"
        self._mark_failed(reimbursement, reason)
        raise GatewayDeclinedError(
            f"Charge for {reimbursement.id} failed: {reason}",
            reimbursement_id=reimbursement.id,
        )

    async def _poll(self, charge: Charge) -> GatewayStatus:
        for attempt in range(1, self.confirm_attempts + 1):
            await self._sleep(self.confirm_interval_seconds)
            status = await self.gateway.confirm_charge(charge.transaction_id)
            logger.debug(f"Confirm {charge.transaction_id} [{attempt}/{self.confirm_attempts}]: {status.value}")
            if status in TERMINAL_STATUSES:
                return status
        raise GatewayTimeoutError(
            f"Charge {charge.transaction_id} did not settle after {self.confirm_attempts} confirmations",
            transaction_id=charge.transaction_id,
        )

    def _mark_processed(self, reimbursement: Reimbursement, charge: Charge) -> SettlementResult:
        reimbursement.status = ReimbursementStatus.PROCESSED
        reimbursement.gateway_transaction_id = charge.transaction_id
        reimbursement.processed_at = datetime.now(timezone.utc)
        reimbursement.failure_reason = None
        self.reimbursements.save(reimbursement, expected_status=ReimbursementStatus.PENDING)
        self._record("settled", reimbursement, {
            "amount": str(reimbursement.amount),
            "currency": reimbursement.currency,
        }, transaction_id=charge.transaction_id)
        logger.info(f"💰 Reimbursement {reimbursement.id} processed | {charge.transaction_id}")

        try:
            self.lifecycle.mark_processed(reimbursement.expense_id, charge.transaction_id)
        except PreconditionError as e:
            # Money has moved; the expense record is reconciled manually
            logger.error(f"❌ Expense {reimbursement.expense_id} not marked processed: {e.message}")
            self._record("expense_sync_failed", reimbursement, {"error": e.to_dict()})

        return SettlementResult(
            reimbursement_id=reimbursement.id,
            success=True,
            status=ReimbursementStatus.PROCESSED,
            transaction_id=charge.transaction_id,
            gateway_status=GatewayStatus.SUCCEEDED.value,
        )

    def _mark_failed(self, reimbursement: Reimbursement, reason: str):
        reimbursement.status = ReimbursementStatus.FAILED
        reimbursement.failure_reason = reason
        self.reimbursements.save(reimbursement, expected_status=ReimbursementStatus.PENDING)
        self._record("settlement_failed", reimbursement, {"reason": reason})
        logger.error(f"❌ Reimbursement {reimbursement.id} failed: {reason}")

    def _record(self, action: str, reimbursement: Reimbursement, details: dict, transaction_id: Optional[str] = None):
        if self.audit is None:
            return
        self.audit.record(
            action=action,
            actor="SettlementProcessor",
            expense_id=reimbursement.expense_id,
            reimbursement_id=reimbursement.id,
            details=details,
            transaction_id=transaction_id,
        )
