"""Configuration management for the held-funds settlement core"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///settlement.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Shared keyed store (daily-check markers, notification claims)
    # "memory" is process-local and only safe for a single instance
    KEYED_STORE_BACKEND = os.getenv("KEYED_STORE_BACKEND", "memory").lower().strip()
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    KEYED_STORE_PREFIX = os.getenv("KEYED_STORE_PREFIX", "settlement:")

    # Hold / guarantee settings
    HOLD_WINDOW_DAYS = int(os.getenv("HOLD_WINDOW_DAYS", "7"))
    DISPUTE_RESPONSE_HOURS = int(os.getenv("DISPUTE_RESPONSE_HOURS", "48"))
    DISPUTE_RESOLUTION_DAYS = int(os.getenv("DISPUTE_RESOLUTION_DAYS", "7"))
    MAX_COVERAGE_PER_CASE = Decimal(os.getenv("MAX_COVERAGE_PER_CASE", "2500"))
    DISPUTE_CASE_NUMBER_ATTEMPTS = int(os.getenv("DISPUTE_CASE_NUMBER_ATTEMPTS", "5"))

    # Complaint-pattern flag (advisory only)
    COMPLAINT_WINDOW_DAYS = int(os.getenv("COMPLAINT_WINDOW_DAYS", "90"))
    COMPLAINT_FLAG_THRESHOLD = int(os.getenv("COMPLAINT_FLAG_THRESHOLD", "3"))

    # Pending balance schedule: business days before a credit becomes spendable
    DEFAULT_HOLD_BUSINESS_DAYS = int(os.getenv("DEFAULT_HOLD_BUSINESS_DAYS", "5"))
    HOLD_SCHEDULE_BUSINESS_DAYS: Dict[str, int] = {
        # Instant rails
        "card": 2,
        "link": 2,
        "apple_pay": 2,
        "google_pay": 2,
        "cash_app": 2,
        # Bank debits
        "us_bank_account": 5,
        "ach_debit": 5,
        "sepa_debit": 5,
        "bacs_debit": 5,
    }

    # Notification de-duplication windows
    LIMIT_NOTIFICATION_DEDUP_HOURS = int(os.getenv("LIMIT_NOTIFICATION_DEDUP_HOURS", "24"))
    FEATURE_LOCK_DEDUP_DAYS = int(os.getenv("FEATURE_LOCK_DEDUP_DAYS", "7"))
    NOTIFICATION_RECORD_RETENTION_DAYS = int(os.getenv("NOTIFICATION_RECORD_RETENTION_DAYS", "30"))
    USAGE_SUMMARY_THRESHOLD_PERCENT = int(os.getenv("USAGE_SUMMARY_THRESHOLD_PERCENT", "80"))

    # Billing period
    BILLING_PERIOD_DAYS = int(os.getenv("BILLING_PERIOD_DAYS", "30"))

    # Payment rail
    PAYMENT_RAIL_BASE_URL = os.getenv("PAYMENT_RAIL_BASE_URL", "https://api.stripe.com/v1")
    PAYMENT_RAIL_API_KEY = os.getenv("PAYMENT_RAIL_API_KEY", os.getenv("STRIPE_SECRET_KEY"))
    PAYMENT_RAIL_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_RAIL_TIMEOUT_SECONDS", "15"))
    PAYMENT_RAIL_CURRENCY = os.getenv("PAYMENT_RAIL_CURRENCY", "usd")

    # Notification dispatch
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_WEBHOOK_TOKEN = os.getenv("NOTIFICATION_WEBHOOK_TOKEN")
    NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))
    NOTIFICATION_MAX_RETRIES = int(os.getenv("NOTIFICATION_MAX_RETRIES", "3"))
    NOTIFICATION_BATCH_SIZE = int(os.getenv("NOTIFICATION_BATCH_SIZE", "20"))

    # Scheduler intervals
    PENDING_RELEASE_INTERVAL_MINUTES = int(os.getenv("PENDING_RELEASE_INTERVAL_MINUTES", "5"))
    HOLD_RELEASE_INTERVAL_MINUTES = int(os.getenv("HOLD_RELEASE_INTERVAL_MINUTES", "15"))
    NOTIFICATION_QUEUE_INTERVAL_SECONDS = int(os.getenv("NOTIFICATION_QUEUE_INTERVAL_SECONDS", "60"))
    NOTIFICATION_CLEANUP_INTERVAL_HOURS = int(os.getenv("NOTIFICATION_CLEANUP_INTERVAL_HOURS", "24"))
    RELEASE_BATCH_SIZE = int(os.getenv("RELEASE_BATCH_SIZE", "100"))
    # Consecutive rejected release attempts before a hold is left for manual review
    MAX_FAILED_RELEASE_ATTEMPTS = int(os.getenv("MAX_FAILED_RELEASE_ATTEMPTS", "3"))

    @classmethod
    def hold_business_days_for(cls, payment_method: str) -> int:
        """Business days a credit stays pending for the given payment method"""
        method = (payment_method or "").lower().strip()
        days = cls.HOLD_SCHEDULE_BUSINESS_DAYS.get(method)
        if days is None:
            logger.warning(
                f"⚠️ HOLD_SCHEDULE: Unknown payment method '{payment_method}', "
                f"using default of {cls.DEFAULT_HOLD_BUSINESS_DAYS} business days"
            )
            return cls.DEFAULT_HOLD_BUSINESS_DAYS
        return days

    @staticmethod
    def validate_configuration() -> Dict[str, Any]:
        """Validate settings that affect money movement"""
        issues = []
        warnings = []

        if Config.MAX_COVERAGE_PER_CASE <= 0:
            issues.append("MAX_COVERAGE_PER_CASE must be positive")
        if Config.HOLD_WINDOW_DAYS < 0:
            issues.append("HOLD_WINDOW_DAYS cannot be negative")
        if Config.PAYMENT_RAIL_TIMEOUT_SECONDS <= 0:
            issues.append("PAYMENT_RAIL_TIMEOUT_SECONDS must be positive")
        if not Config.PAYMENT_RAIL_API_KEY:
            warnings.append("PAYMENT_RAIL_API_KEY is not set; transfers will be rejected by the rail")
        if Config.KEYED_STORE_BACKEND == "memory" and Config.IS_PRODUCTION:
            warnings.append("KEYED_STORE_BACKEND=memory is process-local; use redis for multiple instances")
        if Config.KEYED_STORE_BACKEND not in ("memory", "redis"):
            issues.append(f"Unsupported KEYED_STORE_BACKEND '{Config.KEYED_STORE_BACKEND}'")

        for issue in issues:
            logger.error(f"❌ CONFIG: {issue}")
        for warning in warnings:
            logger.warning(f"⚠️ CONFIG: {warning}")

        return {"valid": not issues, "issues": issues, "warnings": warnings}
