import asyncio
import io
from decimal import Decimal

import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import create_tables, make_engine
from models.expense import ExpenseCreate
from models.expense_category import ExpenseCategory
from models.policy import Policy
from services.exceptions import GatewayTimeoutError, RateUnavailableError
from services.exchange_rates import ExchangeRateCache
from services.ocr_service import OcrOutput, ReceiptExtractor, RegexReceiptParser
from services.payment_gateway import SimulatedPaymentGateway
from services.payroll import SimulatedPayrollLedger
from services.pipeline import Pipeline
from services.repositories import PolicyRepository


async def no_sleep(_seconds):
    return None


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRateProvider:
    """Rates keyed by base currency. ``gate`` lets a test hold a fetch open."""

    def __init__(self, rates=None):
        self.rates = rates if rates is not None else {
            "USD": {"EUR": Decimal("0.92"), "JPY": Decimal("150.123"), "KWD": Decimal("0.3075")},
            "EUR": {"USD": Decimal(1) / Decimal("0.92")},
            "JPY": {"USD": Decimal(1) / Decimal("150.123")},
        }
        self.calls = 0
        self.fail = False
        self.gate = asyncio.Event()
        self.gate.set()

    async def get_rates(self, base_currency):
        self.calls += 1
        await self.gate.wait()
        if self.fail:
            raise RateUnavailableError(f"provider down for {base_currency}", from_currency=base_currency)
        return dict(self.rates.get(base_currency, {}))


class FakeOcrEngine:
    def __init__(self, text: str = "", confidence: float = 0.9):
        self.text = text
        self.confidence = confidence
        self.error = None

    async def recognize(self, image):
        if self.error is not None:
            raise self.error
        return OcrOutput(text=self.text, confidence=self.confidence)


class FlakyGateway(SimulatedPaymentGateway):
    """Accepts the charge, then loses the response ``timeouts`` times."""

    def __init__(self, timeouts: int = 1):
        super().__init__()
        self.timeouts = timeouts

    async def create_charge(self, amount, currency, idempotency_key, metadata=None):
        charge = await super().create_charge(amount, currency, idempotency_key, metadata)
        if self.timeouts > 0:
            self.timeouts -= 1
            raise GatewayTimeoutError("gateway timed out after accepting the charge")
        return charge


RECEIPT_TEXT = """BLUE BOTTLE CAFE
Date: 03/14/2026
Latte 2x
Subtotal $465.00
Tax $35.00
Total $500.00
"""


@pytest.fixture
def db():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    create_tables(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_provider():
    return FakeRateProvider()


@pytest.fixture
def ocr_engine():
    return FakeOcrEngine(RECEIPT_TEXT)


@pytest.fixture
def gateway():
    return SimulatedPaymentGateway()


@pytest.fixture
def payroll_ledger():
    return SimulatedPayrollLedger()


@pytest.fixture
def receipt_image() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (40, 60), "white").save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def meals_policy(db):
    """Meals only, 500 per expense, no approval ceiling."""
    policy = Policy(
        id="POL-MEALS",
        name="Meals",
        allowed_categories={ExpenseCategory.MEALS},
        max_amount_per_expense=Decimal("500"),
    )
    PolicyRepository(db).save(policy)
    return policy


@pytest.fixture
def pipeline(rate_provider, ocr_engine, gateway, payroll_ledger, clock):
    return Pipeline(
        rates=ExchangeRateCache(rate_provider, ttl_seconds=3600, clock=clock),
        extractor=ReceiptExtractor(ocr_engine, RegexReceiptParser()),
        gateway=gateway,
        payroll_client=payroll_ledger,
        base_currency="USD",
        confirm_attempts=3,
        confirm_interval_seconds=0,
        payroll_max_attempts=3,
        payroll_backoff_seconds=0,
        sleep=no_sleep,
    )


def draft(amount="500", currency="USD", category=ExpenseCategory.MEALS, **scope) -> ExpenseCreate:
    return ExpenseCreate(
        submitter_id="EMP0001",
        amount=Decimal(amount),
        currency=currency,
        category=category,
        vendor="Blue Bottle Cafe",
        **scope,
    )


async def approved_expense(pipeline, db, amount="500", currency="USD"):
    service = pipeline.expense_service(db)
    expense = service.create_expense(draft(amount, currency))
    await service.validate_expense(expense.id)
    await service.submit_expense(expense.id)
    return service.approve_expense(expense.id, actor="EMP0006")
