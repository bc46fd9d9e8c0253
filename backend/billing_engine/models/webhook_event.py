"""
ProcessedWebhookEvent model for payment processor webhook idempotency.

A row is inserted in the same transaction as the state change it guards.
The unique constraint on external_event_id is the atomic insert-if-absent:
a concurrent redelivery fails the insert instead of passing a read check.
"""

from sqlalchemy import Column, DateTime, Index, String

from billing_engine.db_base import Base
from billing_engine.models.base import generate_uuid, utcnow


class ProcessedWebhookEvent(Base):
    """Tracks processed processor events for deduplication."""

    __tablename__ = "processed_webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    external_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Processor event id (evt_...)"
    )

    event_type = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Processor event type (e.g., invoice.payment_failed)"
    )

    account_id = Column(
        String(64),
        nullable=True,
        comment="Account the event resolved to, if any"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of raw payload for replay analysis"
    )

    outcome = Column(
        String(50),
        nullable=True,
        comment="applied, noop, ignored_stale, illegal_transition, unhandled"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the event was processed"
    )

    __table_args__ = (
        Index("ix_processed_webhook_events_type_time", "event_type", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent(id={self.external_event_id}, type={self.event_type})>"
