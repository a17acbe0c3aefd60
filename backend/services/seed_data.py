"""
Seed demo data for the application.
Creates a small set of scoped expense policies so the pipeline can be
exercised end to end right after startup.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal, PolicyDB
from models.expense_category import ExpenseCategory
from models.policy import Policy, PolicyScope
from services.repositories import PolicyRepository

logger = logging.getLogger("ExpenseFlow.SeedData")

# Resolution picks the most specific matching scope first, so the
# organization-wide policy only applies when nothing narrower covers the
# submitter. Amounts are in the base currency.
DEMO_POLICIES = [
    Policy(
        id="POL-STANDARD",
        name="Standard Employee",
        scope=PolicyScope(),
        allowed_categories={ExpenseCategory.MEALS, ExpenseCategory.TRANSPORTATION, ExpenseCategory.MISCELLANEOUS},
        max_amount_per_expense=Decimal("500"),
        approval_threshold=Decimal("1000"),
        receipt_required_above=Decimal("75"),
        priority=100,
    ),
    Policy(
        id="POL-TRAVEL",
        name="Travelling Staff",
        scope=PolicyScope(level="staff", department="sales"),
        allowed_categories={
            ExpenseCategory.LODGING, ExpenseCategory.MEALS,
            ExpenseCategory.TRANSPORTATION, ExpenseCategory.MISCELLANEOUS,
        },
        max_amount_per_expense=Decimal("1500"),
        approval_threshold=Decimal("3000"),
        receipt_required_categories={ExpenseCategory.LODGING, ExpenseCategory.TRANSPORTATION},
        receipt_required_above=Decimal("75"),
        priority=50,
    ),
    Policy(
        id="POL-EXEC",
        name="Executive",
        scope=PolicyScope(level="executive"),
        allowed_categories={
            ExpenseCategory.LODGING, ExpenseCategory.MEALS,
            ExpenseCategory.TRANSPORTATION, ExpenseCategory.MISCELLANEOUS,
        },
        max_amount_per_expense=Decimal("5000"),
        approval_threshold=Decimal("10000"),
        receipt_required_above=Decimal("250"),
        priority=10,
    ),
    Policy(
        id="POL-INTERN",
        name="Intern",
        scope=PolicyScope(level="intern"),
        allowed_categories={ExpenseCategory.MEALS, ExpenseCategory.TRANSPORTATION},
        max_amount_per_expense=Decimal("100"),
        # No ceiling: anything above the limit is rejected outright
        approval_threshold=None,
        receipt_required_above=Decimal("25"),
        priority=10,
    ),
]


def seed_demo_data(db: Optional[Session] = None):
    """Seed the policies table when it is empty."""
    own_session = db is None
    db = db or SessionLocal()
    try:
        existing = db.query(PolicyDB).count()
        if existing > 0:
            logger.info(f"ℹ️ Database already has {existing} policies, skipping seed")
            return

        repo = PolicyRepository(db)
        for policy in DEMO_POLICIES:
            repo.save(policy)
            scope = ", ".join(f"{k}={v}" for k, v in policy.scope.model_dump().items() if v) or "everyone"
            logger.info(f"   📋 Policy: {policy.name} [{scope}] limit {policy.max_amount_per_expense}")

        logger.info(f"✅ Seeded {len(DEMO_POLICIES)} policies")

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Seed data failed: {e}")
    finally:
        if own_session:
            db.close()
