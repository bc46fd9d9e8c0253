"""
PaymentRecord model - the payment half of the usage ledger.

CRITICAL: APPEND-ONLY. Refunds and corrections are new rows with
is_reversal=True pointing at the row they cancel.
"""

from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Column, DateTime, Index, Numeric, String

from billing_engine.db_base import Base
from billing_engine.models.base import generate_uuid, utcnow


class PaymentStatus(str, PyEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentRecord(Base):
    """One processor-reported payment outcome."""

    __tablename__ = "payment_records"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(64), nullable=True, index=True)
    external_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Processor event id; one payment record per event"
    )
    external_invoice_id = Column(String(255), nullable=True, index=True)
    external_subscription_id = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency = Column(String(10), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default=PaymentStatus.SUCCEEDED.value)
    is_reversal = Column(Boolean, nullable=False, default=False)
    reverses_id = Column(String(36), nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_payment_records_status_time", "status", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(event={self.external_event_id}, amount={self.amount}, "
            f"status={self.status})>"
        )
