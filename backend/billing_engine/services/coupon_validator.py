"""
Coupon validator.

Validation is read-only: it computes the discount and trial bonus a coupon
would grant, or the first rule it fails. Inventory is consumed only by
commit(), which the checkout orchestrator calls after the payment
processor has created the session. An abandoned checkout therefore never
uses up a coupon.

Rules, in order, stopping at the first failure:
1. Code exists                                  -> CodeNotFound
2. Not expired, not exhausted, active + started -> Expired / Exhausted / Inactive
3. Email in allowed_emails (if any)             -> EmailNotEligible
4. Email domain in allowed_domains (if any)     -> DomainNotEligible
5. Per-account limit (if set)                   -> PerAccountLimitReached
6. First-time-only                              -> NotFirstTime
7. Target tier matches requested tier (if both) -> TierNotApplicable
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.errors import (
    REJECTION_MESSAGES,
    CouponExhaustedError,
    CouponRejection,
    CouponValidationError,
    InvalidTierError,
    StoreUnavailableError,
)
from billing_engine.models.coupon import Coupon, CouponUsage, DiscountType
from billing_engine.models.payment_record import PaymentRecord, PaymentStatus
from billing_engine.models.base import utcnow
from billing_engine.repositories.account_repository import AccountRepository, normalize_email
from billing_engine.repositories.coupon_repository import CouponRepository, normalize_code
from billing_engine.repositories.pricing_repository import PricingTierRepository
from billing_engine.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

DEFAULT_DISCOUNT_TIER = "pro"


@dataclass
class ValidationResult:
    """Outcome of validating a coupon code."""
    valid: bool
    coupon_code: str
    coupon_id: Optional[str] = None
    discount_applied: Decimal = Decimal("0")
    trial_days_granted: int = 0
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    base_price: Optional[Decimal] = None
    tier: Optional[str] = None
    external_coupon_id: Optional[str] = None
    rejection: Optional[CouponRejection] = None
    error_message: Optional[str] = None

    @classmethod
    def rejected(cls, code: str, rejection: CouponRejection) -> "ValidationResult":
        return cls(
            valid=False,
            coupon_code=code,
            rejection=rejection,
            error_message=REJECTION_MESSAGES[rejection],
        )

    def raise_for_rejection(self) -> None:
        """Raise CouponValidationError if this result is a rejection."""
        if not self.valid:
            raise CouponValidationError(self.rejection, self.error_message)


def compute_discount(discount_type: str, discount_value: Decimal, base_price: Decimal) -> Decimal:
    """
    Discount for one billing period, clamped to [0, base_price].

    Percentage discounts are base_price * pct / 100; fixed discounts are
    the fixed amount.
    """
    value = Decimal(discount_value or 0)
    if discount_type == DiscountType.PERCENTAGE.value:
        discount = base_price * value / Decimal(100)
    else:
        discount = value
    if discount < 0:
        return Decimal("0")
    return min(discount, base_price)


class CouponValidator:
    """Evaluates coupon eligibility and commits redemptions."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.coupons = CouponRepository(db_session)
        self.accounts = AccountRepository(db_session)
        self.tiers = PricingTierRepository(db_session)
        self.ledger = UsageLedger(db_session)

    def _has_paid_history(self, account_id: str) -> bool:
        account = self.accounts.get_by_id(account_id)
        if account is not None and account.has_subscription_history:
            return True
        payments = self.db.query(func.count(PaymentRecord.id)).filter(
            PaymentRecord.account_id == account_id,
            PaymentRecord.status == PaymentStatus.SUCCEEDED.value,
            PaymentRecord.is_reversal.is_(False),
        ).scalar() or 0
        return payments > 0

    def _check_coupon(
        self,
        coupon: Coupon,
        account_id: str,
        email: str,
        tier: Optional[str],
    ) -> Optional[CouponRejection]:
        now = utcnow()

        if coupon.is_expired(now):
            return CouponRejection.EXPIRED
        if coupon.is_exhausted:
            return CouponRejection.EXHAUSTED
        if not coupon.is_active or not coupon.is_started(now):
            return CouponRejection.INACTIVE

        allowed_emails = coupon.normalized_emails()
        if allowed_emails and email not in allowed_emails:
            return CouponRejection.EMAIL_NOT_ELIGIBLE

        allowed_domains = coupon.normalized_domains()
        if allowed_domains:
            domain = email.rsplit("@", 1)[-1] if "@" in email else ""
            if domain not in allowed_domains:
                return CouponRejection.DOMAIN_NOT_ELIGIBLE

        if coupon.max_uses_per_account is not None:
            if self.coupons.count_usages(coupon.id, account_id) >= coupon.max_uses_per_account:
                return CouponRejection.PER_ACCOUNT_LIMIT_REACHED

        if coupon.first_time_only and self._has_paid_history(account_id):
            return CouponRejection.NOT_FIRST_TIME

        if tier and coupon.target_tier and coupon.target_tier != tier:
            return CouponRejection.TIER_NOT_APPLICABLE

        return None

    def validate(
        self,
        code: str,
        account_id: str,
        email: str,
        tier: Optional[str] = None,
    ) -> ValidationResult:
        """
        Validate a coupon for an account without mutating anything.

        Args:
            code: Coupon code (case-insensitive)
            account_id: Account redeeming the coupon
            email: Account email used for allow-list and domain rules
            tier: Tier being purchased; sets the base price for the discount

        Returns:
            ValidationResult with either the computed discount or a rejection

        Raises:
            InvalidTierError: If the tier used for pricing is unknown
            StoreUnavailableError: If the store cannot be read
        """
        code = normalize_code(code)
        email = normalize_email(email)

        try:
            coupon = self.coupons.get_by_code(code)
            if coupon is None:
                logger.info("Coupon rejected", extra={
                    "coupon_code": code, "account_id": account_id,
                    "reason": CouponRejection.CODE_NOT_FOUND.value,
                })
                return ValidationResult.rejected(code, CouponRejection.CODE_NOT_FOUND)

            rejection = self._check_coupon(coupon, account_id, email, tier)
            if rejection is not None:
                logger.info("Coupon rejected", extra={
                    "coupon_code": code, "account_id": account_id, "reason": rejection.value,
                })
                return ValidationResult.rejected(code, rejection)

            pricing_tier_name = tier or coupon.target_tier or DEFAULT_DISCOUNT_TIER
            pricing_tier = self.tiers.get_tier(pricing_tier_name)
        except SQLAlchemyError as e:
            logger.error("Coupon validation failed", extra={"coupon_code": code, "error": str(e)})
            raise StoreUnavailableError("Coupon store is temporarily unavailable") from e

        if pricing_tier is None:
            raise InvalidTierError(pricing_tier_name)

        base_price = Decimal(pricing_tier.monthly_price)
        discount = compute_discount(coupon.discount_type, coupon.discount_value, base_price)

        return ValidationResult(
            valid=True,
            coupon_code=code,
            coupon_id=coupon.id,
            discount_applied=discount,
            trial_days_granted=coupon.bonus_trial_days or 0,
            discount_type=coupon.discount_type,
            discount_value=Decimal(coupon.discount_value),
            base_price=base_price,
            tier=pricing_tier.tier,
            external_coupon_id=coupon.external_coupon_id,
        )

    def commit(
        self,
        validation: ValidationResult,
        account_id: str,
        email: str,
        external_session_id: Optional[str],
    ) -> CouponUsage:
        """
        Consume one use of a validated coupon.

        Runs inside the caller's transaction: locks the coupon row where the
        database supports it, re-checks the per-account limit, increments the
        counter with a conditional update, and stages the usage row. The
        caller commits or rolls back.

        Raises:
            CouponExhaustedError: The counter reached max_uses after validation
            CouponValidationError: The per-account limit was reached concurrently
        """
        if not validation.valid or not validation.coupon_id:
            raise ValueError("Only a successful validation can be committed")

        coupon = self.coupons.get_for_update(validation.coupon_id)
        if coupon is None:
            raise CouponValidationError(CouponRejection.CODE_NOT_FOUND)

        if coupon.max_uses_per_account is not None:
            if self.coupons.count_usages(coupon.id, account_id) >= coupon.max_uses_per_account:
                raise CouponValidationError(CouponRejection.PER_ACCOUNT_LIMIT_REACHED)

        if not self.coupons.try_increment_usage(coupon.id):
            logger.warning("Coupon exhausted at commit", extra={
                "coupon_code": validation.coupon_code,
                "account_id": account_id,
                "session_id": external_session_id,
            })
            raise CouponExhaustedError(validation.coupon_code)

        usage = self.ledger.record_coupon_usage(
            coupon_id=coupon.id,
            account_id=account_id,
            email=normalize_email(email),
            discount_applied=validation.discount_applied,
            trial_days_granted=validation.trial_days_granted,
            external_session_id=external_session_id,
        )
        self.db.flush()
        return usage
