"""
Runtime settings read from the environment.

Usage:
    from billing_engine.config.settings import get_settings

    settings = get_settings()
    settings.grace_period_days  # 3
"""

import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

# Grace period for failed payments (days) before paid features are revoked
DEFAULT_GRACE_PERIOD_DAYS = 3


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    """Empty string or 'none' disables the limit."""
    value = os.getenv(name)
    if value is None:
        return default
    if value.strip().lower() in ("", "none", "unlimited"):
        return None
    return int(value)


@dataclass
class BillingSettings:
    """Payment processor, retry and entitlement settings."""

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300
    app_base_url: str = "http://localhost:8000"
    processor_timeout_seconds: float = 10.0
    processor_max_retries: int = 3
    processor_retry_base_delay: float = 0.5
    processor_retry_max_delay: float = 8.0
    grace_period_days: Optional[int] = DEFAULT_GRACE_PERIOD_DAYS
    admin_api_token: Optional[str] = None
    pricing_config_path: Optional[str] = None
    auto_create_tables: bool = False

    @property
    def checkout_success_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/billing/cancel"

    @classmethod
    def from_env(cls) -> "BillingSettings":
        return cls(
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance_seconds=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300")),
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:8000"),
            processor_timeout_seconds=float(os.getenv("PAYMENT_PROCESSOR_TIMEOUT_SECONDS", "10")),
            processor_max_retries=int(os.getenv("PAYMENT_PROCESSOR_MAX_RETRIES", "3")),
            processor_retry_base_delay=float(os.getenv("PAYMENT_PROCESSOR_RETRY_BASE_DELAY", "0.5")),
            processor_retry_max_delay=float(os.getenv("PAYMENT_PROCESSOR_RETRY_MAX_DELAY", "8")),
            grace_period_days=_env_optional_int("BILLING_GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS),
            admin_api_token=os.getenv("ADMIN_API_TOKEN"),
            pricing_config_path=os.getenv("PRICING_CONFIG_PATH"),
            auto_create_tables=_env_bool("AUTO_CREATE_TABLES"),
        )


_settings: Optional[BillingSettings] = None
_settings_lock = Lock()


def get_settings() -> BillingSettings:
    """Get or create the settings singleton."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = BillingSettings.from_env()
                if not _settings.stripe_secret_key:
                    logger.warning("STRIPE_SECRET_KEY not set - payment processor calls will fail")
                if not _settings.stripe_webhook_secret:
                    logger.warning("STRIPE_WEBHOOK_SECRET not set - webhooks will be rejected")
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests)."""
    global _settings
    with _settings_lock:
        _settings = None
