from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv
import os
from pathlib import Path

load_dotenv()


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./donations.db"

    # App
    app_name: str = "Donation Service API"
    debug: bool = False
    service_name: str = "donation-service"
    log_level: str = "INFO"

    # Payment gateway (Razorpay-compatible)
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0
    currency: str = "INR"
    min_order_amount_minor: int = 100  # ₹1
    verify_fetch_payment: bool = False

    # Receipts
    receipt_prefix: str = "KSS"
    receipt_max_attempts: int = 5

    # Ledger
    ledger_max_retries: int = 3

    # Reconciliation sweep
    reconciliation_enabled: bool = False
    reconciliation_interval_seconds: int = 300
    reconciliation_age_minutes: int = 15

    # Kafka
    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic_donation_completed: str = "donation_completed"

    # Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"

    # Operator access to the ledger inspection endpoints
    operator_api_key: str = ""

    class Config:
        env_file = os.path.join(Path(__file__).parent.parent.parent, ".env")
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
