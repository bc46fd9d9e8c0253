"""
Coupon and CouponUsage models.

Coupon definitions are created and edited by administrators. The only
runtime mutation is the usage counter, changed exclusively through
CouponRepository.try_increment_usage.

CouponUsage is APPEND-ONLY: one row per successful redemption.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey,
    Index, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import relationship

from billing_engine.db_base import Base
from billing_engine.models.base import TimestampMixin, ensure_utc, generate_uuid, utcnow


class DiscountType(str, PyEnum):
    """How a coupon's discount_value is interpreted."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponUsageStatus(str, PyEnum):
    APPLIED = "applied"


class Coupon(Base, TimestampMixin):
    """
    Promotion definition.

    Invariant: current_uses <= max_uses (null max_uses = unlimited),
    also enforced by a CHECK constraint.
    """

    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="Uppercase redemption code"
    )
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    discount_type = Column(
        Enum("percentage", "fixed", name="discount_type"),
        nullable=False,
        default=DiscountType.PERCENTAGE.value
    )
    discount_value = Column(
        Numeric(10, 4),
        nullable=False,
        default=Decimal("0"),
        comment="Percent (0-100) or fixed amount in tier currency"
    )
    bonus_trial_days = Column(Integer, nullable=False, default=0)
    target_tier = Column(
        String(20),
        nullable=True,
        comment="Tier the coupon applies to; null = any paid tier"
    )

    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)

    max_uses = Column(Integer, nullable=True, comment="Null = unlimited")
    max_uses_per_account = Column(Integer, nullable=True)
    first_time_only = Column(Boolean, nullable=False, default=False)
    allowed_emails = Column(JSON, nullable=False, default=list)
    allowed_domains = Column(JSON, nullable=False, default=list)

    current_uses = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Incremented only by atomic conditional update"
    )
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    external_coupon_id = Column(
        String(255),
        nullable=True,
        comment="Processor coupon id, created lazily on first paid checkout"
    )
    created_by = Column(String(255), nullable=True)

    usages = relationship("CouponUsage", back_populates="coupon", lazy="dynamic")

    __table_args__ = (
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="uses_within_limit"
        ),
        Index("ix_coupons_active_validity", "is_active", "valid_until"),
    )

    def __repr__(self) -> str:
        return f"<Coupon(code={self.code}, uses={self.current_uses}/{self.max_uses})>"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        valid_until = ensure_utc(self.valid_until)
        return valid_until is not None and (now or utcnow()) > valid_until

    def is_started(self, now: Optional[datetime] = None) -> bool:
        valid_from = ensure_utc(self.valid_from)
        return valid_from is None or (now or utcnow()) >= valid_from

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.current_uses >= self.max_uses

    @property
    def remaining_uses(self) -> Optional[int]:
        if self.max_uses is None:
            return None
        return max(self.max_uses - self.current_uses, 0)

    @property
    def status(self) -> str:
        """Display status for admin listings."""
        if not self.is_active:
            return "inactive"
        if self.is_expired():
            return "expired"
        if self.is_exhausted:
            return "exhausted"
        if not self.is_started():
            return "scheduled"
        return "active"

    def normalized_emails(self) -> List[str]:
        return [e.strip().lower() for e in (self.allowed_emails or []) if e]

    def normalized_domains(self) -> List[str]:
        return [d.strip().lower().lstrip("@") for d in (self.allowed_domains or []) if d]


class CouponUsage(Base):
    """
    Immutable audit row for one redemption.

    Used for per-account limit enforcement and analytics. Corrections are
    new rows with is_reversal=True; rows are never updated.
    """

    __tablename__ = "coupon_usages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    coupon_id = Column(
        String(36),
        ForeignKey("coupons.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    account_id = Column(String(64), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    discount_applied = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    trial_days_granted = Column(Integer, nullable=False, default=0)
    external_session_id = Column(
        String(255),
        nullable=True,
        comment="Processor checkout session id"
    )
    status = Column(String(20), nullable=False, default=CouponUsageStatus.APPLIED.value)
    is_reversal = Column(Boolean, nullable=False, default=False)
    reverses_id = Column(String(36), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    coupon = relationship("Coupon", back_populates="usages")

    __table_args__ = (
        Index("ix_coupon_usages_coupon_account", "coupon_id", "account_id"),
    )

    def __repr__(self) -> str:
        return f"<CouponUsage(coupon_id={self.coupon_id}, account_id={self.account_id})>"
