# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Used until a FinancialSettings row is saved (1000 bps = 10%)
    CURRENCY = os.environ.get("CURRENCY", "INR")
    DEFAULT_COMMISSION_RATE_BPS = int(os.environ.get("DEFAULT_COMMISSION_RATE_BPS", "1000"))

    # "stub" for local development, "razorpay" for the live gateway
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "stub")
    RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "TEST_KEY_ID")
    RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "TEST_KEY_SECRET")
    PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "10"))

    TRANSACTION_RETRY_ATTEMPTS = int(os.environ.get("TRANSACTION_RETRY_ATTEMPTS", "3"))
    TRANSACTION_RETRY_BACKOFF = float(os.environ.get("TRANSACTION_RETRY_BACKOFF", "0.1"))

    # Browser origins allowed to call the API (dev frontends)
    CORS_ALLOWED_ORIGINS = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    )

    # Pre-built PaymentGateway object; overrides PAYMENT_GATEWAY when set (tests)
    PAYMENT_GATEWAY_INSTANCE = None
