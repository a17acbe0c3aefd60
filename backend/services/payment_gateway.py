"""
Payment gateway clients.

Two implementations of one contract:
  - HttpPaymentGateway: REST gateway, every charge carries an Idempotency-Key
    header so a retried request returns the original charge.
  - SimulatedPaymentGateway: in-process gateway used for demos and tests.
    Deduplicates by idempotency key exactly like a real gateway.

Error mapping:
  - timeout / transport failure / 5xx -> GatewayTimeoutError / GatewayError
    (outcome unknown, the charge may exist)
  - 402, and 400/422 on create        -> GatewayDeclinedError (definitive)
  - any other 4xx, unreadable body    -> GatewayError (outcome unknown)
"""

import hashlib
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Protocol

import httpx
from pydantic import BaseModel

from services.currency_normalizer import to_minor_units
from services.exceptions import GatewayDeclinedError, GatewayError, GatewayTimeoutError

logger = logging.getLogger("ExpenseFlow.PaymentGateway")


class GatewayStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"


TERMINAL_STATUSES = {GatewayStatus.SUCCEEDED, GatewayStatus.FAILED, GatewayStatus.REQUIRES_ACTION}

# Only these answers to POST /charges mean no charge was made
DECLINE_STATUSES = (400, 402, 422)


class Charge(BaseModel):
    transaction_id: str
    status: GatewayStatus
    failure_reason: Optional[str] = None


class PaymentGateway(Protocol):
    async def create_charge(self, amount: Decimal, currency: str, idempotency_key: str, metadata: Optional[dict] = None) -> Charge:
        ...

    async def confirm_charge(self, transaction_id: str) -> GatewayStatus:
        ...


def _parse_status(value) -> GatewayStatus:
    try:
        return GatewayStatus(str(value).lower())
    except ValueError:
        # Unknown in-between states are polled until they settle
        return GatewayStatus.PROCESSING


class HttpPaymentGateway:
    """REST payment gateway (``POST /charges``, ``GET /charges/{id}``)."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                return await self._client.request(method, url, timeout=self.timeout_seconds, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"Gateway timed out on {method} {path}") from e
        except httpx.TransportError as e:
            raise GatewayTimeoutError(f"Gateway unreachable on {method} {path}: {e}") from e

    def _check(self, resp: httpx.Response, what: str, definitive_declines=DECLINE_STATUSES) -> dict:
        if resp.status_code >= 500:
            raise GatewayError(f"Gateway error on {what}: HTTP {resp.status_code}", http_status=resp.status_code)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error") or resp.text
            except (ValueError, AttributeError):
                detail = resp.text
            if resp.status_code in definitive_declines:
                raise GatewayDeclinedError(
                    f"Gateway declined {what}: HTTP {resp.status_code} {detail}",
                    http_status=resp.status_code,
                )
            # 409 (key in use), 429, 404 on confirm: the charge may still exist
            raise GatewayError(
                f"Gateway could not answer {what}: HTTP {resp.status_code} {detail}",
                http_status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError(f"Gateway sent an unreadable body on {what}", http_status=resp.status_code) from e
        if not isinstance(data, dict):
            raise GatewayError(f"Gateway sent an unexpected body on {what}", http_status=resp.status_code)
        return data

    async def create_charge(self, amount: Decimal, currency: str, idempotency_key: str, metadata: Optional[dict] = None) -> Charge:
        payload = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "metadata": metadata or {},
        }
        resp = await self._request(
            "POST", "/charges", json=payload, headers=self._headers(idempotency_key),
        )
        data = self._check(resp, "charge")
        charge = Charge(
            transaction_id=str(data.get("id") or data.get("transaction_id") or ""),
            status=_parse_status(data.get("status")),
            failure_reason=data.get("failure_message"),
        )
        if not charge.transaction_id:
            raise GatewayError("Gateway response carried no transaction id")
        logger.info(f"💳 Charge {charge.transaction_id}: {amount} {currency} -> {charge.status.value}")
        return charge

    async def confirm_charge(self, transaction_id: str) -> GatewayStatus:
        resp = await self._request("GET", f"/charges/{transaction_id}", headers=self._headers())
        data = self._check(resp, f"confirm {transaction_id}", definitive_declines=())
        return _parse_status(data.get("status"))


class SimulatedPaymentGateway:
    """In-process gateway. Charges are deduplicated by idempotency key."""

    def __init__(self):
        self._by_key: Dict[str, Charge] = {}
        self._by_id: Dict[str, Charge] = {}
        self.charge_requests = 0

    @property
    def charges(self) -> Dict[str, Charge]:
        return dict(self._by_id)

    async def create_charge(self, amount: Decimal, currency: str, idempotency_key: str, metadata: Optional[dict] = None) -> Charge:
        self.charge_requests += 1
        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            logger.info(f"💳 [SIM] Replayed charge {existing.transaction_id} for key {idempotency_key[:16]}...")
            return existing

        if amount <= 0:
            raise GatewayDeclinedError(f"Invalid charge amount {amount} {currency}")

        transaction_id = "txn_" + hashlib.sha256(
            f"{idempotency_key}{datetime.now(timezone.utc).isoformat()}".encode()
        ).hexdigest()[:24]
        charge = Charge(transaction_id=transaction_id, status=GatewayStatus.SUCCEEDED)
        self._by_key[idempotency_key] = charge
        self._by_id[transaction_id] = charge
        logger.info(f"💰 [SIM] {amount} {currency} charged | {transaction_id}")
        return charge

    async def confirm_charge(self, transaction_id: str) -> GatewayStatus:
        charge = self._by_id.get(transaction_id)
        if charge is None:
            raise GatewayDeclinedError(f"Unknown charge {transaction_id}")
        return charge.status
