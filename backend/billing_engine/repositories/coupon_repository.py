"""
Repository for Coupon and CouponUsage records.

try_increment_usage is the only way the usage counter changes. It is a
single conditional UPDATE, never a read-then-write pair.
"""

import logging
from typing import List, Optional

from sqlalchemy import func, or_

from billing_engine.models.base import utcnow
from billing_engine.models.coupon import Coupon, CouponUsage
from billing_engine.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class CouponRepository(BaseRepository[Coupon]):
    """Data access for coupons and their redemptions."""

    def _get_model_class(self) -> type:
        return Coupon

    def get_by_code(self, code: str) -> Optional[Coupon]:
        return self.db_session.query(Coupon).filter(
            Coupon.code == normalize_code(code)
        ).first()

    def get_for_update(self, coupon_id: str) -> Optional[Coupon]:
        """
        Load a coupon with a row lock held until the transaction ends.

        SQLite ignores FOR UPDATE; the conditional increment still holds
        the limit there.
        """
        return self.db_session.query(Coupon).filter(
            Coupon.id == coupon_id
        ).with_for_update().populate_existing().first()

    def list_coupons(self, active_only: bool = False) -> List[Coupon]:
        query = self.db_session.query(Coupon)
        if active_only:
            query = query.filter(Coupon.is_active.is_(True))
        return query.order_by(Coupon.created_at.desc(), Coupon.code).all()

    def count_usages(self, coupon_id: str, account_id: str) -> int:
        """Net redemptions of a coupon by one account (reversals subtract)."""
        applied = self.db_session.query(func.count(CouponUsage.id)).filter(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.account_id == account_id,
            CouponUsage.is_reversal.is_(False),
        ).scalar() or 0
        reversed_count = self.db_session.query(func.count(CouponUsage.id)).filter(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.account_id == account_id,
            CouponUsage.is_reversal.is_(True),
        ).scalar() or 0
        return applied - reversed_count

    def try_increment_usage(self, coupon_id: str) -> bool:
        """
        Atomically increment current_uses if below max_uses.

        Returns:
            True if the increment was applied, False if the limit was reached
        """
        updated = self.db_session.query(Coupon).filter(
            Coupon.id == coupon_id,
            or_(Coupon.max_uses.is_(None), Coupon.current_uses < Coupon.max_uses),
        ).update(
            {
                Coupon.current_uses: Coupon.current_uses + 1,
                Coupon.last_used_at: utcnow(),
            },
            synchronize_session="fetch",
        )
        return updated == 1

    def set_external_coupon_id_if_missing(self, coupon_id: str, external_coupon_id: str) -> bool:
        updated = self.db_session.query(Coupon).filter(
            Coupon.id == coupon_id,
            Coupon.external_coupon_id.is_(None),
        ).update(
            {Coupon.external_coupon_id: external_coupon_id},
            synchronize_session="fetch",
        )
        return updated == 1
