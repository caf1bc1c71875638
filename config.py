"""Configuration management for the Escrow Settlement Engine"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./escrow_engine.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    # Currency and commission
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "ARS").upper()
    PLATFORM_COMMISSION_RATE = Decimal(os.getenv("PLATFORM_COMMISSION_RATE", "5.00"))
    REFERRAL_REDUCED_COMMISSION_RATE = Decimal(
        os.getenv("REFERRAL_REDUCED_COMMISSION_RATE", "3.00")
    )
    PRO_COMMISSION_RATE = Decimal(os.getenv("PRO_COMMISSION_RATE", "3.00"))
    SUPER_PRO_COMMISSION_RATE = Decimal(os.getenv("SUPER_PRO_COMMISSION_RATE", "2.00"))
    MEMBERSHIP_MONTHLY_DISCOUNTED_CONTRACTS = int(
        os.getenv("MEMBERSHIP_MONTHLY_DISCOUNTED_CONTRACTS", "3")
    )

    # Contract lifecycle
    PAIRING_CODE_TTL_MINUTES = int(os.getenv("PAIRING_CODE_TTL_MINUTES", "30"))
    MAX_CONTRACT_EXTENSIONS = int(os.getenv("MAX_CONTRACT_EXTENSIONS", "1"))

    # Escrow automation windows
    ESCROW_AUTO_RELEASE_DAYS = int(os.getenv("ESCROW_AUTO_RELEASE_DAYS", "7"))
    ESCROW_REMINDER_DAYS = int(os.getenv("ESCROW_REMINDER_DAYS", "5"))
    PENDING_ORDER_TTL_HOURS = int(os.getenv("PENDING_ORDER_TTL_HOURS", "72"))
    SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "100"))
    SWEEP_TIME_BUDGET_SECONDS = float(os.getenv("SWEEP_TIME_BUDGET_SECONDS", "50"))
    AUTO_RELEASE_INTERVAL_MINUTES = int(os.getenv("AUTO_RELEASE_INTERVAL_MINUTES", "60"))
    REMINDER_INTERVAL_HOURS = int(os.getenv("REMINDER_INTERVAL_HOURS", "6"))

    # Referrals
    MAX_REFERRALS_PER_USER = int(os.getenv("MAX_REFERRALS_PER_USER", "3"))
    EARLY_USER_SIGNUP_CREDITS = int(os.getenv("EARLY_USER_SIGNUP_CREDITS", "1"))
    REFERRAL_LOCK_TIMEOUT_SECONDS = int(os.getenv("REFERRAL_LOCK_TIMEOUT_SECONDS", "30"))

    # Audit trail
    AUDIT_SIGNING_KEY = os.getenv("AUDIT_SIGNING_KEY", "development-audit-key")
    AUDIT_RETENTION_DAYS = int(os.getenv("AUDIT_RETENTION_DAYS", "90"))

    # Gateway resilience
    GATEWAY_MAX_ATTEMPTS = int(os.getenv("GATEWAY_MAX_ATTEMPTS", "3"))
    GATEWAY_INITIAL_BACKOFF_SECONDS = float(os.getenv("GATEWAY_INITIAL_BACKOFF_SECONDS", "1.0"))
    GATEWAY_MAX_BACKOFF_SECONDS = float(os.getenv("GATEWAY_MAX_BACKOFF_SECONDS", "30.0"))
    GATEWAY_CIRCUIT_FAILURE_THRESHOLD = int(os.getenv("GATEWAY_CIRCUIT_FAILURE_THRESHOLD", "5"))
    GATEWAY_CIRCUIT_RECOVERY_SECONDS = int(os.getenv("GATEWAY_CIRCUIT_RECOVERY_SECONDS", "60"))
    GATEWAY_REQUEST_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_REQUEST_TIMEOUT_SECONDS", "30"))

    # PayPal
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox").lower()
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID")
    PAYPAL_BASE_URL = (
        "https://api-m.paypal.com"
        if PAYPAL_MODE == "live"
        else "https://api-m.sandbox.paypal.com"
    )

    # Mercado Pago
    MERCADOPAGO_ACCESS_TOKEN = os.getenv("MERCADOPAGO_ACCESS_TOKEN")
    MERCADOPAGO_WEBHOOK_SECRET = os.getenv("MERCADOPAGO_WEBHOOK_SECRET")
    MERCADOPAGO_BASE_URL = os.getenv("MERCADOPAGO_BASE_URL", "https://api.mercadopago.com")

    DEFAULT_PAYMENT_PROVIDER = os.getenv("DEFAULT_PAYMENT_PROVIDER", "paypal").lower()
    CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

    # Webhook server
    WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def log_environment_config(cls):
        """Log current configuration for debugging"""
        logger.info("🔧 Escrow Engine Configuration:")
        logger.info(f"   Environment: {cls.ENVIRONMENT.upper()}")
        logger.info(f"   Default currency: {cls.DEFAULT_CURRENCY}")
        logger.info(f"   Platform commission: {cls.PLATFORM_COMMISSION_RATE}%")
        logger.info(f"   Auto-release after: {cls.ESCROW_AUTO_RELEASE_DAYS} days")
        logger.info(f"   Default provider: {cls.DEFAULT_PAYMENT_PROVIDER}")
        logger.info(f"   PayPal mode: {cls.PAYPAL_MODE}")
        if cls.IS_PRODUCTION and cls.AUDIT_SIGNING_KEY == "development-audit-key":
            logger.error("❌ AUDIT_SIGNING_KEY is not configured for production")
