"""Configuration management for the Salvage Escrow settlement service"""

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on bad input"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not an integer, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = _env_int("DATABASE_POOL_SIZE", 7)
    DATABASE_MAX_OVERFLOW = _env_int("DATABASE_MAX_OVERFLOW", 15)

    # Currency. All money is stored as integer minor units (kobo).
    CURRENCY = os.getenv("CURRENCY", "NGN")
    MINOR_UNITS_PER_MAJOR = 100

    # Wallet ledger
    LEDGER_MAX_RETRIES = _env_int("LEDGER_MAX_RETRIES", 5)
    WALLET_FUNDING_MIN_MINOR = _env_int("WALLET_FUNDING_MIN_MINOR", 50_000 * 100)
    WALLET_FUNDING_MAX_MINOR = _env_int("WALLET_FUNDING_MAX_MINOR", 5_000_000 * 100)

    # Auction bidding
    BID_MAX_RETRIES = _env_int("BID_MAX_RETRIES", 10)
    REQUIRE_BID_VERIFICATION = _env_bool("REQUIRE_BID_VERIFICATION", True)
    ANTI_SNIPING_WINDOW_MINUTES = _env_int("ANTI_SNIPING_WINDOW_MINUTES", 5)
    ANTI_SNIPING_EXTENSION_MINUTES = _env_int("ANTI_SNIPING_EXTENSION_MINUTES", 2)
    # Upper bound on end_time - original_end_time. Zero disables the cap.
    MAX_TOTAL_EXTENSION_MINUTES = _env_int("MAX_TOTAL_EXTENSION_MINUTES", 60)
    DEFAULT_MINIMUM_INCREMENT_MINOR = _env_int("DEFAULT_MINIMUM_INCREMENT_MINOR", 10_000 * 100)

    # Vendor tiers (KYC). tier2 has no bid limit.
    TIER1_BID_LIMIT_MINOR = _env_int("TIER1_BID_LIMIT_MINOR", 500_000 * 100)

    # Payment windows
    PAYMENT_DEADLINE_HOURS = _env_int("PAYMENT_DEADLINE_HOURS", 24)
    PAYMENT_REMINDER_HOURS = _env_int("PAYMENT_REMINDER_HOURS", 12)
    FORFEIT_AFTER_HOURS = _env_int("FORFEIT_AFTER_HOURS", 48)
    FORFEIT_SUSPENSION_DAYS = _env_int("FORFEIT_SUSPENSION_DAYS", 7)
    RELIST_ON_FORFEIT = _env_bool("RELIST_ON_FORFEIT", True)
    DEFAULT_GATEWAY = os.getenv("DEFAULT_GATEWAY", "paystack")

    # Fraud enforcement
    FRAUD_FLAG_THRESHOLD = _env_int("FRAUD_FLAG_THRESHOLD", 3)
    FRAUD_SUSPENSION_DAYS = _env_int("FRAUD_SUSPENSION_DAYS", 30)
    FRAUD_NEW_ACCOUNT_DAYS = _env_int("FRAUD_NEW_ACCOUNT_DAYS", 7)
    FRAUD_BID_JUMP_MULTIPLIER = _env_int("FRAUD_BID_JUMP_MULTIPLIER", 3)
    MIN_JUSTIFICATION_LENGTH = _env_int("MIN_JUSTIFICATION_LENGTH", 10)

    # Paystack
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_CALLBACK_URL = os.getenv("PAYSTACK_CALLBACK_URL")
    INSURER_TRANSFER_RECIPIENT = os.getenv("INSURER_TRANSFER_RECIPIENT")

    # Flutterwave
    FLUTTERWAVE_SECRET_HASH = os.getenv("FLUTTERWAVE_SECRET_HASH")

    # HTTP / webhook handling
    WEBHOOK_TIMEOUT_SECONDS = _env_int("WEBHOOK_TIMEOUT_SECONDS", 10)
    GATEWAY_HTTP_TIMEOUT_SECONDS = _env_int("GATEWAY_HTTP_TIMEOUT_SECONDS", 30)
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    # Read-path caches
    WALLET_CACHE_TTL_SECONDS = _env_int("WALLET_CACHE_TTL_SECONDS", 300)
    AUCTION_CACHE_TTL_SECONDS = _env_int("AUCTION_CACHE_TTL_SECONDS", 30)

    # Scheduler
    ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", True)
    AUCTION_CLOSURE_INTERVAL_SECONDS = _env_int("AUCTION_CLOSURE_INTERVAL_SECONDS", 60)
    PAYMENT_DEADLINE_INTERVAL_MINUTES = _env_int("PAYMENT_DEADLINE_INTERVAL_MINUTES", 5)
    FRAUD_SWEEP_INTERVAL_MINUTES = _env_int("FRAUD_SWEEP_INTERVAL_MINUTES", 10)
    SETTLEMENT_INTERVAL_MINUTES = _env_int("SETTLEMENT_INTERVAL_MINUTES", 5)
    WALLET_RECONCILIATION_HOUR = _env_int("WALLET_RECONCILIATION_HOUR", 3)
    SWEEP_BATCH_SIZE = _env_int("SWEEP_BATCH_SIZE", 100)

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    AUDIT_LOG_FILE: Optional[str] = os.getenv("AUDIT_LOG_FILE")

    @classmethod
    def validate(cls) -> list:
        """Return a list of configuration problems, empty when healthy"""
        problems = []
        if not cls.DATABASE_URL:
            problems.append("DATABASE_URL is required")
        if cls.IS_PRODUCTION and not cls.PAYSTACK_SECRET_KEY:
            problems.append("PAYSTACK_SECRET_KEY is required in production")
        if cls.IS_PRODUCTION and not cls.FLUTTERWAVE_SECRET_HASH:
            problems.append("FLUTTERWAVE_SECRET_HASH is required in production")
        if cls.ANTI_SNIPING_EXTENSION_MINUTES <= 0:
            problems.append("ANTI_SNIPING_EXTENSION_MINUTES must be positive")
        if cls.PAYMENT_REMINDER_HOURS >= cls.PAYMENT_DEADLINE_HOURS:
            problems.append("PAYMENT_REMINDER_HOURS must be shorter than PAYMENT_DEADLINE_HOURS")
        if cls.FRAUD_FLAG_THRESHOLD < 1:
            problems.append("FRAUD_FLAG_THRESHOLD must be at least 1")
        return problems

    @classmethod
    def log_configuration(cls) -> None:
        """Log the effective configuration without secrets"""
        logger.info(f"🔧 CONFIG: environment={cls.ENVIRONMENT} currency={cls.CURRENCY}")
        logger.info(
            f"🔧 CONFIG: anti-sniping window={cls.ANTI_SNIPING_WINDOW_MINUTES}m "
            f"extension={cls.ANTI_SNIPING_EXTENSION_MINUTES}m cap={cls.MAX_TOTAL_EXTENSION_MINUTES}m"
        )
        logger.info(
            f"🔧 CONFIG: payment deadline={cls.PAYMENT_DEADLINE_HOURS}h "
            f"reminder={cls.PAYMENT_REMINDER_HOURS}h forfeit={cls.FORFEIT_AFTER_HOURS}h"
        )
        logger.info(f"🔧 CONFIG: fraud threshold={cls.FRAUD_FLAG_THRESHOLD} suspension={cls.FRAUD_SUSPENSION_DAYS}d")
        logger.info(f"🔧 CONFIG: paystack configured={bool(cls.PAYSTACK_SECRET_KEY)} "
                    f"flutterwave configured={bool(cls.FLUTTERWAVE_SECRET_HASH)}")
        for problem in cls.validate():
            logger.warning(f"⚠️ CONFIG_PROBLEM: {problem}")
