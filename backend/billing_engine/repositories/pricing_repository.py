"""
Repository for pricing tiers.
"""

from typing import List, Optional

from billing_engine.models.pricing_tier import PricingTier
from billing_engine.repositories.base_repo import BaseRepository


class PricingTierRepository(BaseRepository[PricingTier]):
    """Read access to the tier catalogue."""

    def _get_model_class(self) -> type:
        return PricingTier

    def get_tier(self, tier: str) -> Optional[PricingTier]:
        return self.db_session.query(PricingTier).filter(
            PricingTier.tier == (tier or "").strip().lower(),
            PricingTier.is_active.is_(True),
        ).first()

    def list_active(self) -> List[PricingTier]:
        return self.db_session.query(PricingTier).filter(
            PricingTier.is_active.is_(True)
        ).order_by(PricingTier.monthly_price).all()
