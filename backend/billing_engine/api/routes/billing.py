"""
Billing API routes: checkout, subscription status, cancellation,
entitlements and coupon preview.

Errors are raised as BillingError subclasses and rendered by the handlers
registered in billing_engine.api.error_handlers.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from billing_engine.api.dependencies import get_processor_client
from billing_engine.database.session import get_db_session
from billing_engine.integrations.stripe.billing_client import StripeBillingClient
from billing_engine.repositories.pricing_repository import PricingTierRepository
from billing_engine.services.checkout_orchestrator import CheckoutOrchestrator
from billing_engine.services.coupon_validator import CouponValidator
from billing_engine.services.entitlement_service import EntitlementService
from billing_engine.services.subscription_service import SubscriptionInfo, SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


# Request/Response models

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(CamelModel):
    """Request to begin a purchase."""
    account_id: str = Field(..., alias="accountId", min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    tier: str = Field(..., min_length=1, max_length=20)
    coupon_code: Optional[str] = Field(None, alias="couponCode", max_length=50)


class CheckoutResponse(CamelModel):
    """Checkout outcome: a redirect to the processor or a whitelist grant."""
    success: bool
    session_id: Optional[str] = Field(None, alias="sessionId")
    redirect_url: Optional[str] = Field(None, alias="redirectUrl")
    whitelist_granted: bool = Field(False, alias="whitelistGranted")
    access_level: Optional[str] = Field(None, alias="accessLevel")
    discount_applied: Optional[float] = Field(None, alias="discountApplied")
    trial_days: Optional[int] = Field(None, alias="trialDays")
    error_message: Optional[str] = Field(None, alias="errorMessage")


class CouponPreviewRequest(CamelModel):
    coupon_code: str = Field(..., alias="couponCode", min_length=1, max_length=50)
    account_id: str = Field(..., alias="accountId", min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)
    tier: Optional[str] = Field(None, max_length=20)


class CouponPreviewResponse(CamelModel):
    valid: bool
    coupon_code: str = Field(..., alias="couponCode")
    discount_applied: Optional[float] = Field(None, alias="discountApplied")
    trial_days_granted: int = Field(0, alias="trialDaysGranted")
    base_price: Optional[float] = Field(None, alias="basePrice")
    reason: Optional[str] = None
    error_message: Optional[str] = Field(None, alias="errorMessage")


class SubscriptionResponse(CamelModel):
    """Current subscription information."""
    account_id: str = Field(..., alias="accountId")
    tier: str
    status: str
    is_active: bool = Field(..., alias="isActive")
    can_access_features: bool = Field(..., alias="canAccessFeatures")
    is_whitelisted: bool = Field(..., alias="isWhitelisted")
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    current_period_end: Optional[datetime] = Field(None, alias="currentPeriodEnd")
    trial_end: Optional[datetime] = Field(None, alias="trialEnd")
    cancel_at_period_end: bool = Field(False, alias="cancelAtPeriodEnd")
    downgraded_reason: Optional[str] = Field(None, alias="downgradedReason")


class EntitlementResponse(CamelModel):
    account_id: str = Field(..., alias="accountId")
    tier: str
    effective_tier: str = Field(..., alias="effectiveTier")
    subscription_state: str = Field(..., alias="subscriptionState")
    has_access: bool = Field(..., alias="hasAccess")
    in_grace_period: bool = Field(..., alias="inGracePeriod")
    grace_period_ends_on: Optional[datetime] = Field(None, alias="gracePeriodEndsOn")
    is_whitelisted: bool = Field(..., alias="isWhitelisted")
    monthly_voicemail_limit: Optional[int] = Field(None, alias="monthlyVoicemailLimit")
    features: List[str]


class TierResponse(CamelModel):
    tier: str
    display_name: str = Field(..., alias="displayName")
    monthly_price: float = Field(..., alias="monthlyPrice")
    currency: str
    base_trial_days: int = Field(..., alias="baseTrialDays")
    features: List[str]
    monthly_voicemail_limit: Optional[int] = Field(None, alias="monthlyVoicemailLimit")


def _subscription_response(info: SubscriptionInfo) -> SubscriptionResponse:
    return SubscriptionResponse(
        account_id=info.account_id,
        tier=info.tier,
        status=info.status,
        is_active=info.is_active,
        can_access_features=info.can_access_features,
        is_whitelisted=info.is_whitelisted,
        subscription_id=info.subscription_id,
        current_period_end=info.current_period_end,
        trial_end=info.trial_end,
        cancel_at_period_end=info.cancel_at_period_end,
        downgraded_reason=info.downgraded_reason,
    )


def get_checkout_orchestrator(
    db_session: Session = Depends(get_db_session),
    client: StripeBillingClient = Depends(get_processor_client),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(db_session, client)


def get_subscription_service(
    db_session: Session = Depends(get_db_session),
    client: StripeBillingClient = Depends(get_processor_client),
) -> SubscriptionService:
    return SubscriptionService(db_session, client)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_request: CheckoutRequest,
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    """
    Begin a purchase.

    Allow-listed emails are granted access immediately. Everyone else gets
    a processor checkout session to redirect to.
    """
    logger.info("Creating checkout", extra={
        "account_id": checkout_request.account_id,
        "tier": checkout_request.tier,
        "coupon_code": checkout_request.coupon_code,
    })

    result = await orchestrator.create_checkout(
        account_id=checkout_request.account_id,
        email=checkout_request.email,
        phone=checkout_request.phone,
        tier=checkout_request.tier,
        coupon_code=checkout_request.coupon_code,
    )
    return CheckoutResponse(
        success=result.success,
        session_id=result.session_id,
        redirect_url=result.redirect_url,
        whitelist_granted=result.whitelist_granted,
        access_level=result.access_level,
        discount_applied=float(result.discount_applied) if result.discount_applied is not None else None,
        trial_days=result.trial_days,
    )


@router.post("/coupons/validate", response_model=CouponPreviewResponse)
async def preview_coupon(
    preview_request: CouponPreviewRequest,
    db_session: Session = Depends(get_db_session),
):
    """Show what a coupon would grant. Nothing is consumed."""
    result = CouponValidator(db_session).validate(
        preview_request.coupon_code,
        preview_request.account_id,
        preview_request.email,
        preview_request.tier.lower() if preview_request.tier else None,
    )
    return CouponPreviewResponse(
        valid=result.valid,
        coupon_code=result.coupon_code,
        discount_applied=float(result.discount_applied) if result.valid else None,
        trial_days_granted=result.trial_days_granted,
        base_price=float(result.base_price) if result.base_price is not None else None,
        reason=result.rejection.value if result.rejection else None,
        error_message=result.error_message,
    )


@router.get("/tiers", response_model=List[TierResponse])
async def list_tiers(db_session: Session = Depends(get_db_session)):
    """Available pricing tiers."""
    return [
        TierResponse(
            tier=tier.tier,
            display_name=tier.display_name,
            monthly_price=float(tier.monthly_price),
            currency=tier.currency,
            base_trial_days=tier.base_trial_days,
            features=list(tier.features or []),
            monthly_voicemail_limit=tier.monthly_voicemail_limit,
        )
        for tier in PricingTierRepository(db_session).list_active()
    ]


@router.get("/subscription/{account_id}", response_model=SubscriptionResponse)
async def get_subscription(
    account_id: str,
    refresh: bool = Query(False, description="Re-read the subscription from the processor"),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Current subscription status and access."""
    info = await service.get_subscription_status(account_id, refresh=refresh)
    return _subscription_response(info)


@router.post("/subscription/{account_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    account_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel at the end of the current billing period."""
    info = await service.cancel_subscription(account_id)
    return _subscription_response(info)


@router.get("/entitlements/{account_id}", response_model=EntitlementResponse)
async def get_entitlements(
    account_id: str,
    db_session: Session = Depends(get_db_session),
):
    """Features the account may use right now."""
    entitlement = EntitlementService(db_session).resolve(account_id)
    return EntitlementResponse(
        account_id=entitlement.account_id,
        tier=entitlement.tier,
        effective_tier=entitlement.effective_tier,
        subscription_state=entitlement.subscription_state,
        has_access=entitlement.has_access,
        in_grace_period=entitlement.in_grace_period,
        grace_period_ends_on=entitlement.grace_period_ends_on,
        is_whitelisted=entitlement.is_whitelisted,
        monthly_voicemail_limit=entitlement.monthly_voicemail_limit,
        features=entitlement.features,
    )
