"""
Account model - the identity anchor for entitlement.

CRITICAL: Accounts are never deleted, only deactivated.
Mutated only by the checkout orchestrator (whitelist grant) and the
webhook reconciler (payment-driven grant). Webhook-driven state changes go
through AccountRepository.compare_and_set_state.
"""

from datetime import timedelta
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, String

from billing_engine.db_base import Base
from billing_engine.models.base import TimestampMixin, ensure_utc, utcnow


class SubscriptionTier(str, PyEnum):
    """Subscription tiers."""
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


PAID_TIERS = frozenset({SubscriptionTier.PRO.value, SubscriptionTier.BUSINESS.value})


class SubscriptionState(str, PyEnum):
    """Payment-driven subscription lifecycle states."""
    NONE = "none"              # Never subscribed
    TRIALING = "trialing"      # Checkout completed with a trial window
    ACTIVE = "active"          # Paid and current
    PAST_DUE = "past_due"      # Invoice payment failed, grace period applies
    CANCELED = "canceled"      # Terminal for the current subscription id


# States in which the processor still considers the subscription live
ENTITLED_STATES = frozenset({
    SubscriptionState.TRIALING.value,
    SubscriptionState.ACTIVE.value,
    SubscriptionState.PAST_DUE.value,
})


class Account(Base, TimestampMixin):
    """
    A customer account and its resolved subscription state.

    subscription_active is derived: whitelisted OR state in ENTITLED_STATES.
    """

    __tablename__ = "accounts"

    id = Column(
        String(64),
        primary_key=True,
        comment="Client-supplied account identifier"
    )
    email = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Normalized (lowercase) email"
    )
    phone = Column(
        String(50),
        nullable=True,
        comment="Phone number as supplied at checkout"
    )

    subscription_tier = Column(
        Enum("free", "pro", "business", name="subscription_tier"),
        nullable=False,
        default=SubscriptionTier.FREE.value,
        comment="Current tier"
    )
    subscription_state = Column(
        Enum("none", "trialing", "active", "past_due", "canceled", name="subscription_state"),
        nullable=False,
        default=SubscriptionState.NONE.value,
        index=True,
        comment="Payment-driven lifecycle state"
    )
    subscription_active = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True only when whitelisted or in a live subscription state"
    )

    # Whitelist grant
    is_whitelisted = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Entitlement granted by allow-list, no payment"
    )
    whitelist_reason = Column(String(255), nullable=True)
    whitelisted_at = Column(DateTime(timezone=True), nullable=True)

    # Payment processor references
    external_customer_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Processor customer id (cus_...)"
    )
    external_subscription_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Processor subscription id (sub_...) of the current lifecycle"
    )

    # Billing period
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    past_due_since = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Start of the grace period; cleared when payment recovers"
    )
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    state_changed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_accounts_state_tier", "subscription_state", "subscription_tier"),
    )

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, tier={self.subscription_tier}, "
            f"state={self.subscription_state})>"
        )

    @property
    def has_subscription_history(self) -> bool:
        """True if the account ever started a paid subscription."""
        return (
            self.subscription_state != SubscriptionState.NONE.value
            or bool(self.external_subscription_id)
        )

    def is_in_grace_period(self, grace_period_days: Optional[int]) -> bool:
        """
        Check if a past-due account is still inside its grace period.

        Args:
            grace_period_days: Configured grace length; None means unlimited.
        """
        if self.subscription_state != SubscriptionState.PAST_DUE.value:
            return False
        if grace_period_days is None:
            return True
        since = ensure_utc(self.past_due_since)
        if since is None:
            return True
        return utcnow() < since + timedelta(days=grace_period_days)

    def allows_access(self, grace_period_days: Optional[int]) -> bool:
        """Check if paid features are currently usable."""
        if self.is_whitelisted:
            return True
        if self.subscription_state in (
            SubscriptionState.TRIALING.value,
            SubscriptionState.ACTIVE.value,
        ):
            return True
        return self.is_in_grace_period(grace_period_days)
