"""
Usage ledger: append-only record of coupon redemptions and payments.

CRITICAL: Rows are never updated or deleted. Corrections are new rows with
is_reversal=True that reference the row they cancel. Record methods stage
rows in the caller's transaction; the caller commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from billing_engine.errors import NotFoundError
from billing_engine.models.account import Account, SubscriptionState
from billing_engine.models.coupon import Coupon, CouponUsage, CouponUsageStatus
from billing_engine.models.payment_record import PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass
class CouponStats:
    """Redemption totals for one coupon."""
    coupon_id: str
    code: str
    redemptions: int
    total_discount: Decimal
    current_uses: int
    max_uses: Optional[int]


@dataclass
class LedgerSummary:
    """Headline analytics over the ledger."""
    total_revenue: Decimal
    active_subscribers: int
    trialing_subscribers: int
    past_due_subscribers: int
    whitelisted_accounts: int
    total_redemptions: int
    average_discount: Decimal


class UsageLedger:
    """Append and query coupon redemptions and payment events."""

    def __init__(self, db_session: Session):
        self.db = db_session

    # =========================================================================
    # Appends
    # =========================================================================

    def record_coupon_usage(
        self,
        coupon_id: str,
        account_id: str,
        email: str,
        discount_applied: Decimal,
        trial_days_granted: int,
        external_session_id: Optional[str],
    ) -> CouponUsage:
        usage = CouponUsage(
            coupon_id=coupon_id,
            account_id=account_id,
            email=email,
            discount_applied=discount_applied,
            trial_days_granted=trial_days_granted,
            external_session_id=external_session_id,
            status=CouponUsageStatus.APPLIED.value,
            is_reversal=False,
        )
        self.db.add(usage)
        return usage

    def reverse_coupon_usage(self, usage_id: str) -> CouponUsage:
        """Append a reversal row cancelling a redemption (counter is untouched)."""
        original = self.db.query(CouponUsage).filter(CouponUsage.id == usage_id).first()
        if original is None or original.is_reversal:
            raise NotFoundError(f"Coupon usage not found: {usage_id}")

        reversal = CouponUsage(
            coupon_id=original.coupon_id,
            account_id=original.account_id,
            email=original.email,
            discount_applied=original.discount_applied,
            trial_days_granted=original.trial_days_granted,
            external_session_id=original.external_session_id,
            status=original.status,
            is_reversal=True,
            reverses_id=original.id,
        )
        self.db.add(reversal)
        return reversal

    def get_payment_by_event(self, external_event_id: str) -> Optional[PaymentRecord]:
        return self.db.query(PaymentRecord).filter(
            PaymentRecord.external_event_id == external_event_id
        ).first()

    def record_payment(
        self,
        external_event_id: str,
        account_id: Optional[str],
        amount: Decimal,
        currency: str = "usd",
        status: str = PaymentStatus.SUCCEEDED.value,
        external_invoice_id: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Append a payment record, at most one per processor event id.

        A second call for the same event id returns the existing row.
        """
        existing = self.get_payment_by_event(external_event_id)
        if existing is not None:
            logger.info("Payment already recorded", extra={"event_id": external_event_id})
            return existing

        record = PaymentRecord(
            account_id=account_id,
            external_event_id=external_event_id,
            external_invoice_id=external_invoice_id,
            external_subscription_id=external_subscription_id,
            amount=amount,
            currency=(currency or "usd").lower(),
            status=status,
            is_reversal=False,
        )
        self.db.add(record)
        return record

    def record_reversal(self, payment_id: str, external_event_id: str) -> PaymentRecord:
        """Append a refund/correction row cancelling a prior payment."""
        original = self.db.query(PaymentRecord).filter(PaymentRecord.id == payment_id).first()
        if original is None or original.is_reversal:
            raise NotFoundError(f"Payment record not found: {payment_id}")

        reversal = PaymentRecord(
            account_id=original.account_id,
            external_event_id=external_event_id,
            external_invoice_id=original.external_invoice_id,
            external_subscription_id=original.external_subscription_id,
            amount=original.amount,
            currency=original.currency,
            status=original.status,
            is_reversal=True,
            reverses_id=original.id,
        )
        self.db.add(reversal)
        return reversal

    # =========================================================================
    # Analytics
    # =========================================================================

    def _signed_sum(self, column, *criteria) -> Decimal:
        gross = self.db.query(func.coalesce(func.sum(column), 0)).filter(
            *criteria, column.class_.is_reversal.is_(False)
        ).scalar()
        reversed_total = self.db.query(func.coalesce(func.sum(column), 0)).filter(
            *criteria, column.class_.is_reversal.is_(True)
        ).scalar()
        return Decimal(str(gross or 0)) - Decimal(str(reversed_total or 0))

    def total_revenue(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Decimal:
        """Net succeeded payments in [since, until)."""
        criteria = [PaymentRecord.status == PaymentStatus.SUCCEEDED.value]
        if since is not None:
            criteria.append(PaymentRecord.recorded_at >= since)
        if until is not None:
            criteria.append(PaymentRecord.recorded_at < until)
        return self._signed_sum(PaymentRecord.amount, *criteria)

    def _count_state(self, state: str) -> int:
        return self.db.query(func.count(Account.id)).filter(
            Account.subscription_state == state
        ).scalar() or 0

    def active_subscriber_count(self) -> int:
        """Accounts with a live, paying or trialing subscription."""
        return self.db.query(func.count(Account.id)).filter(
            Account.subscription_state.in_([
                SubscriptionState.ACTIVE.value,
                SubscriptionState.TRIALING.value,
            ])
        ).scalar() or 0

    def redemption_count(self) -> int:
        applied = self.db.query(func.count(CouponUsage.id)).filter(
            CouponUsage.is_reversal.is_(False)
        ).scalar() or 0
        reversed_count = self.db.query(func.count(CouponUsage.id)).filter(
            CouponUsage.is_reversal.is_(True)
        ).scalar() or 0
        return applied - reversed_count

    def average_discount(self) -> Decimal:
        """Mean discount per net redemption."""
        redemptions = self.redemption_count()
        if redemptions <= 0:
            return _ZERO
        total = self._signed_sum(CouponUsage.discount_applied)
        return total / Decimal(redemptions)

    def coupon_stats(self, limit: Optional[int] = None) -> List[CouponStats]:
        """Per-coupon redemptions, most used first."""
        usage_rows = self.db.query(
            CouponUsage.coupon_id,
            CouponUsage.is_reversal,
            func.count(CouponUsage.id),
            func.coalesce(func.sum(CouponUsage.discount_applied), 0),
        ).group_by(CouponUsage.coupon_id, CouponUsage.is_reversal).all()

        totals: Dict[str, List] = {}
        for coupon_id, is_reversal, count, discount in usage_rows:
            sign = -1 if is_reversal else 1
            entry = totals.setdefault(coupon_id, [0, _ZERO])
            entry[0] += sign * count
            entry[1] += sign * Decimal(str(discount or 0))

        coupons = self.db.query(Coupon).all()
        stats = [
            CouponStats(
                coupon_id=coupon.id,
                code=coupon.code,
                redemptions=totals.get(coupon.id, [0, _ZERO])[0],
                total_discount=totals.get(coupon.id, [0, _ZERO])[1],
                current_uses=coupon.current_uses,
                max_uses=coupon.max_uses,
            )
            for coupon in coupons
        ]
        stats.sort(key=lambda s: (-s.redemptions, s.code))
        return stats[:limit] if limit else stats

    def summary(self) -> LedgerSummary:
        return LedgerSummary(
            total_revenue=self.total_revenue(),
            active_subscribers=self._count_state(SubscriptionState.ACTIVE.value),
            trialing_subscribers=self._count_state(SubscriptionState.TRIALING.value),
            past_due_subscribers=self._count_state(SubscriptionState.PAST_DUE.value),
            whitelisted_accounts=self.db.query(func.count(Account.id)).filter(
                Account.is_whitelisted.is_(True)
            ).scalar() or 0,
            total_redemptions=self.redemption_count(),
            average_discount=self.average_discount(),
        )
