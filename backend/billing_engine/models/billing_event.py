"""
BillingEvent model for the subscription audit trail.

CRITICAL: This table is APPEND-ONLY.
Never update or delete billing events - only insert new ones.
"""

from sqlalchemy import JSON, Column, DateTime, Index, String, Text

from billing_engine.db_base import Base
from billing_engine.models.base import generate_uuid, utcnow


class BillingEventType:
    """Billing event type constants."""
    # Subscription lifecycle
    SUBSCRIPTION_STATE_CHANGED = "subscription_state_changed"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription_cancel_scheduled"
    TRANSITION_REJECTED = "transition_rejected"
    STALE_EVENT_IGNORED = "stale_event_ignored"

    # Payment events
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"

    # Trial events
    TRIAL_WILL_END = "trial_will_end"

    # Checkout
    CHECKOUT_SESSION_CREATED = "checkout_session_created"
    WHITELIST_GRANTED = "whitelist_granted"
    WHITELIST_REVOKED = "whitelist_revoked"


class ActorType:
    """Actor type constants."""
    USER = "user"
    SYSTEM = "system"
    WEBHOOK = "webhook"
    ADMIN = "admin"
    CRON = "cron"


class BillingEvent(Base):
    """Immutable audit record of an entitlement-relevant change."""

    __tablename__ = "billing_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(64), nullable=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    from_state = Column(String(20), nullable=True)
    to_state = Column(String(20), nullable=True)
    external_event_id = Column(
        String(255),
        nullable=True,
        comment="Processor event id or checkout session id for replay analysis"
    )
    actor_type = Column(String(20), nullable=False, default=ActorType.SYSTEM)
    description = Column(Text, nullable=True)
    extra_metadata = Column(JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_billing_events_account_time", "account_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<BillingEvent(type={self.event_type}, account_id={self.account_id})>"
