"""
PricingTier model.

Tiers are GLOBAL product offerings, seeded from config/pricing_tiers.yml.
Prices are Decimal in the tier currency.
"""

from decimal import Decimal

from sqlalchemy import JSON, Boolean, Column, Integer, Numeric, String

from billing_engine.db_base import Base
from billing_engine.models.base import TimestampMixin


class PricingTier(Base, TimestampMixin):
    """Price, base trial and features of one subscription tier."""

    __tablename__ = "pricing_tiers"

    tier = Column(
        String(20),
        primary_key=True,
        comment="free, pro, business"
    )
    display_name = Column(String(100), nullable=False)
    monthly_price = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    currency = Column(String(10), nullable=False, default="usd")
    base_trial_days = Column(Integer, nullable=False, default=0)
    external_price_id = Column(
        String(255),
        nullable=True,
        comment="Processor price reference (price_...)"
    )
    features = Column(JSON, nullable=False, default=list)
    monthly_voicemail_limit = Column(
        Integer,
        nullable=True,
        comment="Null = unlimited"
    )
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<PricingTier(tier={self.tier}, price={self.monthly_price})>"

    @property
    def is_paid(self) -> bool:
        return self.monthly_price is not None and self.monthly_price > 0
