"""Application configuration loaded from environment variables."""

from typing import Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Organization accounting currency
    base_currency: str = "USD"

    # Exchange rate provider (returns {"rates": {...}} relative to ?base=)
    exchange_rate_api_url: str = "https://api.exchangerate-api.com/v4/latest"
    exchange_rate_ttl_seconds: float = 3600.0
    exchange_rate_timeout_seconds: float = 10.0
    exchange_rate_max_attempts: int = 3
    exchange_rate_backoff_seconds: float = 0.5
    exchange_rate_backoff_max_seconds: float = 8.0

    # Receipt OCR
    tesseract_cmd: Optional[str] = None  # Falls back to tesseract on $PATH
    ocr_language: str = "eng"
    ocr_timeout_seconds: float = 30.0
    image_fetch_timeout_seconds: float = 10.0
    receipt_parser: str = "regex"

    # Policy
    policy_receipt_amount_tolerance: float = 0.15

    # Payment gateway ("simulation" keeps charges in-process)
    payment_gateway_mode: str = "simulation"
    payment_gateway_url: str = ""
    payment_gateway_api_key: str = ""
    payment_gateway_timeout_seconds: float = 15.0
    payment_confirm_attempts: int = 5
    payment_confirm_interval_seconds: float = 1.0

    # Payroll ledger
    payroll_mode: str = "simulation"
    payroll_api_url: str = ""
    payroll_api_key: str = ""
    payroll_timeout_seconds: float = 10.0
    payroll_max_attempts: int = 3
    payroll_backoff_seconds: float = 0.5

    # App
    database_url: str = "sqlite:///./expenseflow.db"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False
    seed_demo_data: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
