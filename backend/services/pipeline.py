"""
Pipeline wiring - builds every component from Settings.

Process-wide pieces (rate cache, OCR extractor, gateway, payroll client,
settlement in-flight set) are created once and kept on ``app.state``.
Session-bound pieces (repositories, lifecycle, services) are built per
request from those.
"""

import logging
from typing import Optional, Set

from fastapi import Request
from sqlalchemy.orm import Session

from config import Settings, settings
from services.audit import AuditTrail
from services.currency_normalizer import CurrencyNormalizer
from services.exchange_rates import ExchangeRateCache, ExchangeRateProvider, HttpExchangeRateProvider
from services.expense_lifecycle import ApprovalNotifier, ExpenseLifecycle
from services.expense_service import ExpenseService
from services.ocr_service import ReceiptExtractor, TesseractOcrEngine, get_parser
from services.payment_gateway import HttpPaymentGateway, PaymentGateway, SimulatedPaymentGateway
from services.payroll import HttpPayrollClient, PayrollAdapter, PayrollClient, SimulatedPayrollLedger
from services.policy_engine import PolicyEngine
from services.reimbursement_service import ReimbursementService
from services.repositories import ExpenseRepository, PolicyRepository, ReceiptRepository, ReimbursementRepository
from services.settlement import SettlementProcessor

logger = logging.getLogger("ExpenseFlow.Pipeline")


class Pipeline:
    """Shared components plus factories for session-bound services."""

    def __init__(
        self,
        rates: ExchangeRateCache,
        extractor: ReceiptExtractor,
        gateway: PaymentGateway,
        payroll_client: PayrollClient,
        base_currency: str = "USD",
        receipt_amount_tolerance: float = 0.15,
        confirm_attempts: int = 5,
        confirm_interval_seconds: float = 1.0,
        payroll_max_attempts: int = 3,
        payroll_backoff_seconds: float = 0.5,
        notifier: Optional[ApprovalNotifier] = None,
        sleep=None,
    ):
        self.rates = rates
        self.extractor = extractor
        self.gateway = gateway
        self.payroll_client = payroll_client
        self.base_currency = base_currency
        self.receipt_amount_tolerance = receipt_amount_tolerance
        self.confirm_attempts = confirm_attempts
        self.confirm_interval_seconds = confirm_interval_seconds
        self.payroll_max_attempts = payroll_max_attempts
        self.payroll_backoff_seconds = payroll_backoff_seconds
        self.notifier = notifier
        self.settlement_in_flight: Set[str] = set()
        self._sleep_kwargs = {"sleep": sleep} if sleep is not None else {}

    def lifecycle(self, db: Session) -> ExpenseLifecycle:
        receipts = ReceiptRepository(db)
        return ExpenseLifecycle(
            expenses=ExpenseRepository(db, receipts),
            receipts=receipts,
            normalizer=CurrencyNormalizer(self.rates, self.base_currency),
            policy_engine=PolicyEngine(PolicyRepository(db), self.receipt_amount_tolerance),
            audit=AuditTrail(db),
            notifier=self.notifier,
        )

    def expense_service(self, db: Session) -> ExpenseService:
        lifecycle = self.lifecycle(db)
        return ExpenseService(
            expenses=lifecycle.expenses,
            receipts=lifecycle.receipts,
            lifecycle=lifecycle,
            extractor=self.extractor,
            audit=lifecycle.audit,
        )

    def settlement(self, db: Session) -> SettlementProcessor:
        lifecycle = self.lifecycle(db)
        return SettlementProcessor(
            reimbursements=ReimbursementRepository(db),
            lifecycle=lifecycle,
            gateway=self.gateway,
            audit=lifecycle.audit,
            confirm_attempts=self.confirm_attempts,
            confirm_interval_seconds=self.confirm_interval_seconds,
            in_flight=self.settlement_in_flight,
            **self._sleep_kwargs,
        )

    def reimbursement_service(self, db: Session) -> ReimbursementService:
        settlement = self.settlement(db)
        return ReimbursementService(
            expenses=settlement.lifecycle.expenses,
            reimbursements=settlement.reimbursements,
            settlement=settlement,
            payroll=PayrollAdapter(
                self.payroll_client,
                max_attempts=self.payroll_max_attempts,
                backoff_seconds=self.payroll_backoff_seconds,
                **self._sleep_kwargs,
            ),
            audit=settlement.audit,
        )


def build_gateway(cfg: Settings) -> PaymentGateway:
    if cfg.payment_gateway_mode == "http":
        if not cfg.payment_gateway_url:
            raise ValueError("payment_gateway_url is required when payment_gateway_mode=http")
        return HttpPaymentGateway(
            cfg.payment_gateway_url,
            api_key=cfg.payment_gateway_api_key,
            timeout_seconds=cfg.payment_gateway_timeout_seconds,
        )
    logger.warning("⚠️ Payment gateway in simulation mode")
    return SimulatedPaymentGateway()


def build_payroll_client(cfg: Settings) -> PayrollClient:
    if cfg.payroll_mode == "http":
        if not cfg.payroll_api_url:
            raise ValueError("payroll_api_url is required when payroll_mode=http")
        return HttpPayrollClient(
            cfg.payroll_api_url,
            api_key=cfg.payroll_api_key,
            timeout_seconds=cfg.payroll_timeout_seconds,
        )
    logger.warning("⚠️ Payroll ledger in simulation mode")
    return SimulatedPayrollLedger()


def build_pipeline(cfg: Settings = settings, rate_provider: Optional[ExchangeRateProvider] = None) -> Pipeline:
    provider = rate_provider or HttpExchangeRateProvider(
        cfg.exchange_rate_api_url,
        timeout_seconds=cfg.exchange_rate_timeout_seconds,
        max_attempts=cfg.exchange_rate_max_attempts,
        backoff_seconds=cfg.exchange_rate_backoff_seconds,
        backoff_max_seconds=cfg.exchange_rate_backoff_max_seconds,
    )
    extractor = ReceiptExtractor(
        TesseractOcrEngine(
            language=cfg.ocr_language,
            timeout_seconds=cfg.ocr_timeout_seconds,
            tesseract_cmd=cfg.tesseract_cmd,
        ),
        get_parser(cfg.receipt_parser),
        image_timeout_seconds=cfg.image_fetch_timeout_seconds,
    )
    logger.info(
        f"🔧 Pipeline: base {cfg.base_currency}, parser '{cfg.receipt_parser}', "
        f"gateway {cfg.payment_gateway_mode}, payroll {cfg.payroll_mode}"
    )
    return Pipeline(
        rates=ExchangeRateCache(provider, ttl_seconds=cfg.exchange_rate_ttl_seconds),
        extractor=extractor,
        gateway=build_gateway(cfg),
        payroll_client=build_payroll_client(cfg),
        base_currency=cfg.base_currency,
        receipt_amount_tolerance=cfg.policy_receipt_amount_tolerance,
        confirm_attempts=cfg.payment_confirm_attempts,
        confirm_interval_seconds=cfg.payment_confirm_interval_seconds,
        payroll_max_attempts=cfg.payroll_max_attempts,
        payroll_backoff_seconds=cfg.payroll_backoff_seconds,
    )


def get_pipeline(request: Request) -> Pipeline:
    """FastAPI dependency: the pipeline built at startup."""
    return request.app.state.pipeline
