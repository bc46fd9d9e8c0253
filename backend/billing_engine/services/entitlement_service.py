"""
Entitlement resolution.

Determines the features an account may use right now from its tier,
subscription state and allow-list flag. Past-due accounts keep their paid
features for a configurable grace period; after that, and after
cancellation, they fall back to the free tier.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.config.settings import get_settings
from billing_engine.errors import EntitlementDeniedError, NotFoundError, StoreUnavailableError
from billing_engine.models.account import Account, SubscriptionTier
from billing_engine.models.base import ensure_utc
from billing_engine.repositories.account_repository import AccountRepository
from billing_engine.repositories.pricing_repository import PricingTierRepository

logger = logging.getLogger(__name__)

_FROM_SETTINGS = object()

# Tier order, lowest first; used to name the cheapest tier offering a feature
TIER_ORDER = [
    SubscriptionTier.FREE.value,
    SubscriptionTier.PRO.value,
    SubscriptionTier.BUSINESS.value,
]


@dataclass
class Entitlement:
    """Resolved access for one account."""
    account_id: str
    tier: str
    effective_tier: str
    subscription_state: str
    has_access: bool
    in_grace_period: bool = False
    is_whitelisted: bool = False
    grace_period_ends_on: Optional[datetime] = None
    monthly_voicemail_limit: Optional[int] = None
    features: List[str] = field(default_factory=list)

    def allows(self, feature: str) -> bool:
        return feature in self.features


class EntitlementService:
    """Evaluates feature access for accounts."""

    def __init__(self, db_session: Session, grace_period_days: Any = _FROM_SETTINGS):
        """
        Args:
            db_session: Database session
            grace_period_days: Override of the configured grace period;
                None means unlimited. Defaults to BILLING_GRACE_PERIOD_DAYS.
        """
        self.db = db_session
        self.accounts = AccountRepository(db_session)
        self.tiers = PricingTierRepository(db_session)
        if grace_period_days is _FROM_SETTINGS:
            grace_period_days = get_settings().grace_period_days
        self.grace_period_days = grace_period_days

    def _grace_period_ends_on(self, account: Account) -> Optional[datetime]:
        if self.grace_period_days is None or account.past_due_since is None:
            return None
        return ensure_utc(account.past_due_since) + timedelta(days=self.grace_period_days)

    def _tier_features(self, tier: str) -> Tuple[List[str], Optional[int]]:
        pricing = self.tiers.get_tier(tier)
        if pricing is None:
            logger.warning("Pricing tier missing", extra={"tier": tier})
            return [], None
        return list(pricing.features or []), pricing.monthly_voicemail_limit

    def _cheapest_tier_with(self, feature: str) -> Optional[str]:
        for tier in TIER_ORDER:
            features, _ = self._tier_features(tier)
            if feature in features:
                return tier
        return None

    def resolve(self, account_id: str) -> Entitlement:
        """
        Resolve the current entitlement of an account.

        Raises:
            NotFoundError: Unknown account
            StoreUnavailableError: Database failure
        """
        try:
            account = self.accounts.get_by_id(account_id)
            if account is None:
                raise NotFoundError(f"Account {account_id} not found", reason="AccountNotFound")

            has_access = account.allows_access(self.grace_period_days)
            in_grace = not account.is_whitelisted and account.is_in_grace_period(self.grace_period_days)
            effective_tier = account.subscription_tier if has_access else SubscriptionTier.FREE.value
            features, voicemail_limit = self._tier_features(effective_tier)
        except SQLAlchemyError as e:
            logger.error("Entitlement lookup failed", extra={"account_id": account_id, "error": str(e)})
            raise StoreUnavailableError("Entitlement store unavailable") from e

        return Entitlement(
            account_id=account.id,
            tier=account.subscription_tier,
            effective_tier=effective_tier,
            subscription_state=account.subscription_state,
            has_access=has_access,
            in_grace_period=in_grace,
            is_whitelisted=bool(account.is_whitelisted),
            grace_period_ends_on=self._grace_period_ends_on(account) if in_grace else None,
            monthly_voicemail_limit=voicemail_limit,
            features=features,
        )

    def require_feature(self, account_id: str, feature: str) -> Entitlement:
        """
        Gate a feature for an account.

        Returns:
            The resolved entitlement when the feature is available

        Raises:
            EntitlementDeniedError: Feature not available right now
        """
        entitlement = self.resolve(account_id)
        if entitlement.allows(feature):
            return entitlement

        logger.info("Entitlement denied", extra={
            "account_id": account_id,
            "feature": feature,
            "tier": entitlement.tier,
            "subscription_state": entitlement.subscription_state,
        })
        raise EntitlementDeniedError(
            feature=feature,
            subscription_state=entitlement.subscription_state,
            tier=entitlement.effective_tier,
            required_tier=self._cheapest_tier_with(feature),
        )
