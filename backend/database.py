"""SQLAlchemy database setup and table definitions."""

from sqlalchemy import (
    create_engine, Column, Integer, Numeric, String, DateTime, Boolean, Text, JSON,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime, timezone

from config import settings


def _utcnow():
    return datetime.now(timezone.utc)


def make_engine(database_url: str, **kwargs):
    """Create an engine; SQLite needs cross-thread access for the async app."""
    connect_args = {"check_same_thread": False} if "sqlite" in database_url else {}
    return create_engine(database_url, connect_args=connect_args, echo=False, **kwargs)


engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# --- DB Models ---

class ExpenseDB(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    expense_id = Column(String(50), unique=True, index=True, nullable=False)
    submitter_id = Column(String(50), nullable=False, index=True)

    # Policy scope of the submitter at creation time
    employee_level = Column(String(50), nullable=True)
    department = Column(String(50), nullable=True)
    destination = Column(String(100), nullable=True)

    category = Column(String(30), nullable=False)
    vendor = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)

    original_amount = Column(Numeric(18, 4), nullable=False)
    original_currency = Column(String(3), nullable=False)

    # Normalization (set iff status >= Validated)
    normalized_amount = Column(Numeric(18, 4), nullable=True)
    base_currency = Column(String(3), nullable=True)
    exchange_rate = Column(Numeric(24, 10), nullable=True)

    status = Column(String(20), nullable=False, default="Draft", index=True)
    policy_verdict = Column(JSON, nullable=True)  # {"policy_id", "reasons": [...], "evaluated_at"}
    requires_secondary_approval = Column(Boolean, default=False)
    transaction_id = Column(String(100), nullable=True)
    rejection_note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    validated_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)


class ReceiptDB(Base):
    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True, index=True)
    receipt_id = Column(String(50), unique=True, index=True, nullable=False)
    expense_id = Column(String(50), nullable=False, index=True)
    image_ref = Column(String(300), nullable=False)

    # Extracted fields as {"amount": {"value", "confidence", "resolved"}, ...}
    fields = Column(JSON, nullable=False)
    raw_text = Column(Text, nullable=True)  # Full OCR text kept for audit
    ocr_confidence = Column(Numeric(6, 3), nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class ReimbursementDB(Base):
    __tablename__ = "reimbursements"

    id = Column(Integer, primary_key=True, index=True)
    reimbursement_id = Column(String(50), unique=True, index=True, nullable=False)
    expense_id = Column(String(50), unique=True, index=True, nullable=False)  # one per expense
    employee_id = Column(String(50), nullable=False, index=True)
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="Pending", index=True)
    idempotency_key = Column(String(64), unique=True, nullable=False)
    gateway_transaction_id = Column(String(100), nullable=True)
    failure_reason = Column(Text, nullable=True)

    payroll_posted_at = Column(DateTime, nullable=True)
    payroll_reference = Column(String(100), nullable=True)
    payroll_error = Column(Text, nullable=True)

    submitted_at = Column(DateTime, default=_utcnow)
    approved_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)


class PolicyDB(Base):
    __tablename__ = "policies"

    id = Column(Integer, primary_key=True, index=True)
    policy_id = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)

    # Scope keys (None = applies to all)
    employee_level = Column(String(50), nullable=True)
    department = Column(String(50), nullable=True)
    destination = Column(String(100), nullable=True)

    allowed_categories = Column(JSON, nullable=False, default=list)
    max_amount_per_expense = Column(Numeric(18, 4), nullable=False)
    approval_threshold = Column(Numeric(18, 4), nullable=True)
    receipt_required_categories = Column(JSON, nullable=False, default=list)
    receipt_required_above = Column(Numeric(18, 4), nullable=True)
    priority = Column(Integer, default=100)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)


class AuditLogDB(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    expense_id = Column(String(50), nullable=True, index=True)
    reimbursement_id = Column(String(50), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    actor = Column(String(50), nullable=False)
    details = Column(JSON, nullable=True)
    transaction_id = Column(String(100), nullable=True)
    timestamp = Column(DateTime, default=_utcnow)


def create_tables(bind=None):
    """Create all database tables."""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Dependency for FastAPI - yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
