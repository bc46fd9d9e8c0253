"""
Database models for accounts, coupons, allow-list, and the billing ledger.

Importing this package registers every table on Base.metadata.
"""

from billing_engine.models.base import TimestampMixin
from billing_engine.models.account import (
    Account,
    SubscriptionState,
    SubscriptionTier,
    ENTITLED_STATES,
    PAID_TIERS,
)
from billing_engine.models.coupon import Coupon, CouponUsage, CouponUsageStatus, DiscountType
from billing_engine.models.whitelist_entry import AccessLevel, WhitelistEntry, WhitelistRole
from billing_engine.models.webhook_event import ProcessedWebhookEvent
from billing_engine.models.payment_record import PaymentRecord, PaymentStatus
from billing_engine.models.billing_event import ActorType, BillingEvent, BillingEventType
from billing_engine.models.pricing_tier import PricingTier

__all__ = [
    "TimestampMixin",
    "Account",
    "SubscriptionState",
    "SubscriptionTier",
    "ENTITLED_STATES",
    "PAID_TIERS",
    "Coupon",
    "CouponUsage",
    "CouponUsageStatus",
    "DiscountType",
    "AccessLevel",
    "WhitelistEntry",
    "WhitelistRole",
    "ProcessedWebhookEvent",
    "PaymentRecord",
    "PaymentStatus",
    "ActorType",
    "BillingEvent",
    "BillingEventType",
    "PricingTier",
]
