"""Data access for the eligibility store. No business rules live here."""

from billing_engine.repositories.account_repository import AccountRepository
from billing_engine.repositories.coupon_repository import CouponRepository
from billing_engine.repositories.whitelist_repository import WhitelistRepository
from billing_engine.repositories.pricing_repository import PricingTierRepository

__all__ = [
    "AccountRepository",
    "CouponRepository",
    "WhitelistRepository",
    "PricingTierRepository",
]
