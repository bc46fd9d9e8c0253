"""
Shared FastAPI dependencies.

Routes receive the database session, the payment processor client and the
admin guard from here so tests can swap them with dependency_overrides.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from billing_engine.config.settings import BillingSettings, get_settings
from billing_engine.integrations.stripe.billing_client import StripeBillingClient, get_billing_client

logger = logging.getLogger(__name__)


def get_app_settings() -> BillingSettings:
    return get_settings()


def get_processor_client() -> StripeBillingClient:
    """Process-wide payment processor client."""
    return get_billing_client()


def require_admin_token(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    settings: BillingSettings = Depends(get_app_settings),
) -> str:
    """
    Verify the admin token header.

    Returns:
        A short, non-secret actor label for audit fields

    Raises:
        HTTPException: 503 if no admin token is configured, 401 if the header is wrong
    """
    if not settings.admin_api_token:
        logger.error("ADMIN_API_TOKEN not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin interface not configured",
        )
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode("utf-8"), settings.admin_api_token.encode("utf-8")
    ):
        logger.warning("Admin request rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )
    return "admin"
