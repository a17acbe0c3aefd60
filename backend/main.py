"""
ExpenseFlow - expense-to-payout pipeline.
Main FastAPI application entry point.

Receipt OCR -> currency normalization -> policy evaluation -> approval
-> idempotent gateway settlement -> payroll posting.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import os
import logging

from config import settings
from database import create_tables
from routers import expenses, reimbursements, audit
from services.pipeline import build_pipeline
from services.seed_data import seed_demo_data

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger("ExpenseFlow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("🚀 Starting ExpenseFlow...")

    create_tables()
    logger.info("✅ Database tables created")

    if settings.seed_demo_data:
        seed_demo_data()
        logger.info("✅ Demo policies seeded")

    # Shared across requests: rate cache, OCR engine, gateway, payroll client
    app.state.pipeline = build_pipeline(settings)
    logger.info(f"💱 Base currency: {settings.base_currency}")
    logger.info(f"💳 Gateway: {settings.payment_gateway_mode} | 📒 Payroll: {settings.payroll_mode}")
    yield
    logger.info("👋 ExpenseFlow shutting down...")


app = FastAPI(
    title="ExpenseFlow",
    description=(
        "Turns receipts and submitted amounts into currency-normalized, "
        "policy-validated expenses and pays them out exactly once."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(expenses.router, prefix="/api/expenses", tags=["Expenses"])
app.include_router(reimbursements.router, prefix="/api/reimbursements", tags=["Reimbursements"])
app.include_router(audit.router, prefix="/api/audit", tags=["Audit Trail"])

# Serve uploaded receipt files
uploads_dir = os.path.join(os.path.dirname(__file__), "uploads")
os.makedirs(uploads_dir, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=uploads_dir), name="uploads")


@app.get("/")
async def root():
    return {
        "name": "ExpenseFlow",
        "status": "online",
        "base_currency": settings.base_currency,
        "gateway_mode": settings.payment_gateway_mode,
        "payroll_mode": settings.payroll_mode,
    }


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", settings.api_port))
    logger.info(f"🔌 Binding to port {port}")
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=port,
        reload=False,
    )
