"""
Admin service for coupon and allow-list management.

Handles:
- Creating, listing and editing coupons
- Adding, deactivating and listing allow-list entries
- Ledger corrections: reversal rows for payments and coupon redemptions

The coupon usage counter is never writable here; it only moves through
the coupon validator's commit step. Discount terms are fixed once a coupon
exists because a processor coupon may already carry them.

SECURITY: Admin operations require the admin token (verified at route level).
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.errors import (
    ConflictError,
    NotFoundError,
    StaleStateError,
    StoreUnavailableError,
    ValidationError,
)
from billing_engine.models.account import ENTITLED_STATES, Account, SubscriptionTier
from billing_engine.models.base import ensure_utc
from billing_engine.models.billing_event import ActorType, BillingEvent, BillingEventType
from billing_engine.models.coupon import Coupon, CouponUsage, DiscountType
from billing_engine.models.payment_record import PaymentRecord
from billing_engine.models.whitelist_entry import AccessLevel, WhitelistEntry, WhitelistRole
from billing_engine.repositories.account_repository import AccountRepository, normalize_email
from billing_engine.repositories.coupon_repository import CouponRepository, normalize_code
from billing_engine.repositories.pricing_repository import PricingTierRepository
from billing_engine.repositories.whitelist_repository import WhitelistRepository
from billing_engine.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

# Fields an administrator may change after creation
COUPON_UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "is_active",
    "bonus_trial_days",
    "valid_from",
    "valid_until",
    "max_uses",
    "max_uses_per_account",
    "first_time_only",
    "allowed_emails",
    "allowed_domains",
})

WHITELIST_FIELDS = frozenset({
    "name",
    "role",
    "access_level",
    "is_active",
    "expires_at",
    "can_access_admin_panel",
    "can_create_coupons",
    "can_manage_whitelist",
    "can_bypass_limits",
    "notes",
})


def _check_window(valid_from: Optional[datetime], valid_until: Optional[datetime]) -> None:
    valid_from = ensure_utc(valid_from)
    valid_until = ensure_utc(valid_until)
    if valid_from and valid_until and valid_until <= valid_from:
        raise ValidationError("valid_until must be after valid_from", reason="InvalidValidityWindow")


def _check_non_negative(fields: Dict[str, Any], *names: str) -> None:
    for name in names:
        value = fields.get(name)
        if value is not None and value < 0:
            raise ValidationError(f"{name} must not be negative", reason="InvalidLimit")


class AdminService:
    """Coupon and allow-list administration."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.coupons = CouponRepository(db_session)
        self.whitelist = WhitelistRepository(db_session)
        self.accounts = AccountRepository(db_session)
        self.tiers = PricingTierRepository(db_session)
        self.ledger = UsageLedger(db_session)

    # =========================================================================
    # Coupons
    # =========================================================================

    def get_coupon(self, code: str) -> Coupon:
        coupon = self.coupons.get_by_code(code)
        if coupon is None:
            raise NotFoundError(f"Coupon not found: {normalize_code(code)}", reason="CouponNotFound")
        return coupon

    def list_coupons(self, active_only: bool = False) -> List[Coupon]:
        return self.coupons.list_coupons(active_only=active_only)

    def create_coupon(self, fields: Dict[str, Any], created_by: Optional[str] = None) -> Coupon:
        """
        Create a coupon.

        Raises:
            ValidationError: Invalid discount, tier, window or limits
            ConflictError: Code already exists
        """
        code = normalize_code(fields.get("code", ""))
        if not code:
            raise ValidationError("Coupon code is required", reason="MissingField")

        discount_type = fields.get("discount_type", DiscountType.PERCENTAGE.value)
        if discount_type not in (DiscountType.PERCENTAGE.value, DiscountType.FIXED.value):
            raise ValidationError(f"Unknown discount type: {discount_type}", reason="InvalidDiscount")
        try:
            discount_value = Decimal(str(fields.get("discount_value", 0)))
        except InvalidOperation:
            raise ValidationError("discount_value must be a number", reason="InvalidDiscount")
        if discount_value < 0 or (
            discount_type == DiscountType.PERCENTAGE.value and discount_value > 100
        ):
            raise ValidationError("Discount is out of range", reason="InvalidDiscount")

        target_tier = fields.get("target_tier")
        if target_tier:
            target_tier = target_tier.lower()
            pricing = self.tiers.get_tier(target_tier)
            if pricing is None or not pricing.is_paid:
                raise ValidationError(f"Unknown paid tier: {target_tier}", reason="InvalidTier")

        _check_window(fields.get("valid_from"), fields.get("valid_until"))
        _check_non_negative(fields, "bonus_trial_days", "max_uses", "max_uses_per_account")

        if self.coupons.get_by_code(code) is not None:
            raise ConflictError(f"Coupon {code} already exists", reason="CouponCodeExists")

        data = {
            key: fields[key]
            for key in COUPON_UPDATABLE_FIELDS
            if key in fields and fields[key] is not None
        }
        data.update({
            "code": code,
            "discount_type": discount_type,
            "discount_value": discount_value,
            "target_tier": target_tier or None,
            "current_uses": 0,
            "created_by": created_by,
        })
        try:
            coupon = self.coupons.create(data)
        except IntegrityError as e:
            raise ConflictError(f"Coupon {code} already exists", reason="CouponCodeExists") from e
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Coupon store unavailable") from e

        logger.info("Coupon created", extra={
            "coupon_code": code,
            "discount_type": discount_type,
            "discount_value": str(discount_value),
            "max_uses": coupon.max_uses,
            "created_by": created_by,
        })
        return coupon

    def update_coupon(self, code: str, changes: Dict[str, Any]) -> Coupon:
        """
        Update the editable fields of a coupon.

        Raises:
            NotFoundError: Unknown code
            ValidationError: Attempt to change a fixed field, or invalid values
        """
        coupon = self.get_coupon(code)

        fixed = set(changes) - COUPON_UPDATABLE_FIELDS
        if fixed:
            raise ValidationError(
                f"Fields cannot be changed: {', '.join(sorted(fixed))}",
                reason="FieldNotUpdatable",
            )

        _check_window(
            changes.get("valid_from", coupon.valid_from),
            changes.get("valid_until", coupon.valid_until),
        )
        _check_non_negative(changes, "bonus_trial_days", "max_uses", "max_uses_per_account")
        max_uses = changes.get("max_uses")
        if max_uses is not None and max_uses < coupon.current_uses:
            raise ValidationError(
                f"max_uses cannot be below current uses ({coupon.current_uses})",
                reason="InvalidLimit",
            )

        try:
            coupon = self.coupons.update(coupon, changes)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Coupon store unavailable") from e

        logger.info("Coupon updated", extra={
            "coupon_code": coupon.code,
            "fields": sorted(changes.keys()),
        })
        return coupon

    # =========================================================================
    # Allow-list
    # =========================================================================

    def list_whitelist(self, active_only: bool = False) -> List[WhitelistEntry]:
        return self.whitelist.list_entries(active_only=active_only)

    def upsert_whitelist_entry(
        self,
        email: str,
        fields: Dict[str, Any],
        added_by: Optional[str] = None,
    ) -> WhitelistEntry:
        """Add an allow-list entry or update the existing one for the email."""
        email = normalize_email(email)
        if "@" not in email:
            raise ValidationError("A valid email is required", reason="InvalidEmail")

        role = fields.get("role")
        if role is not None and role not in {r.value for r in WhitelistRole}:
            raise ValidationError(f"Unknown role: {role}", reason="InvalidRole")
        access_level = fields.get("access_level")
        if access_level is not None and access_level not in {a.value for a in AccessLevel}:
            raise ValidationError(f"Unknown access level: {access_level}", reason="InvalidAccessLevel")

        data = {key: value for key, value in fields.items() if key in WHITELIST_FIELDS}
        if added_by and self.whitelist.get_by_email(email) is None:
            data["added_by"] = added_by

        try:
            entry = self.whitelist.upsert(email, data)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Allow-list store unavailable") from e

        logger.info("Whitelist entry saved", extra={
            "email": email,
            "role": entry.role,
            "access_level": entry.access_level,
            "is_active": entry.is_active,
        })
        return entry

    def remove_whitelist_entry(self, email: str) -> WhitelistEntry:
        """
        Deactivate an allow-list entry and revoke its grant on the account.

        Entries are never deleted. The account keeps whatever its payment
        state entitles it to.

        Raises:
            NotFoundError: No entry for the email
            StaleStateError: Account changed concurrently; retry
        """
        entry = self.whitelist.get_by_email(email)
        if entry is None:
            raise NotFoundError(f"Whitelist entry not found: {normalize_email(email)}", reason="WhitelistEntryNotFound")

        try:
            entry.is_active = False
            account = self.accounts.get_by_email(entry.email)
            if account is not None and account.is_whitelisted:
                self._revoke_grant(account)
            self.db.commit()
        except StaleStateError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to deactivate whitelist entry", extra={"email": entry.email, "error": str(e)})
            raise StoreUnavailableError("Allow-list store unavailable") from e

        logger.info("Whitelist entry deactivated", extra={"email": entry.email})
        return entry

    def _revoke_grant(self, account: Account) -> None:
        entitled = account.subscription_state in ENTITLED_STATES
        values: Dict[str, Any] = {
            "is_whitelisted": False,
            "whitelist_reason": None,
            "subscription_active": entitled,
        }
        if not entitled:
            values["subscription_tier"] = SubscriptionTier.FREE.value

        if not self.accounts.compare_and_set_state(account.id, account.subscription_state, values):
            raise StaleStateError(account.id, account.subscription_state)

        self.db.add(BillingEvent(
            account_id=account.id,
            event_type=BillingEventType.WHITELIST_REVOKED,
            from_state=account.subscription_state,
            to_state=account.subscription_state,
            actor_type=ActorType.ADMIN,
            description="Allow-list entry deactivated",
        ))

    # =========================================================================
    # Ledger corrections
    # =========================================================================

    def list_payments(self, account_id: str) -> List[PaymentRecord]:
        return self.db.query(PaymentRecord).filter(
            PaymentRecord.account_id == account_id
        ).order_by(PaymentRecord.recorded_at).all()

    def list_coupon_usages(self, code: str) -> List[CouponUsage]:
        coupon = self.get_coupon(code)
        return self.db.query(CouponUsage).filter(
            CouponUsage.coupon_id == coupon.id
        ).order_by(CouponUsage.used_at).all()

    def reverse_payment(self, payment_id: str, reversed_by: Optional[str] = None) -> PaymentRecord:
        """
        Append a reversal row cancelling a payment (refund or correction).

        Raises:
            NotFoundError: Unknown payment, or the id names a reversal row
            ConflictError: The payment was already reversed
        """
        already = self.db.query(PaymentRecord).filter(PaymentRecord.reverses_id == payment_id).first()
        if already is not None:
            raise ConflictError(f"Payment {payment_id} is already reversed", reason="AlreadyReversed")

        reversal = self.ledger.record_reversal(payment_id, external_event_id=f"reversal:{payment_id}")
        self._commit_correction("payment", payment_id)

        logger.info("Payment reversed", extra={
            "payment_id": payment_id,
            "amount": str(reversal.amount),
            "reversed_by": reversed_by,
        })
        return reversal

    def reverse_coupon_usage(self, usage_id: str, reversed_by: Optional[str] = None) -> CouponUsage:
        """
        Append a reversal row cancelling a coupon redemption.

        The usage counter is not decremented; a reversed redemption still
        consumed inventory.

        Raises:
            NotFoundError: Unknown usage, or the id names a reversal row
            ConflictError: The redemption was already reversed
        """
        already = self.db.query(CouponUsage).filter(CouponUsage.reverses_id == usage_id).first()
        if already is not None:
            raise ConflictError(f"Coupon usage {usage_id} is already reversed", reason="AlreadyReversed")

        reversal = self.ledger.reverse_coupon_usage(usage_id)
        self._commit_correction("coupon_usage", usage_id)

        logger.info("Coupon usage reversed", extra={
            "usage_id": usage_id,
            "discount": str(reversal.discount_applied),
            "reversed_by": reversed_by,
        })
        return reversal

    def _commit_correction(self, kind: str, row_id: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(f"{kind} {row_id} is already reversed", reason="AlreadyReversed") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to record ledger correction", extra={
                "kind": kind,
                "row_id": row_id,
                "error": str(e),
            })
            raise StoreUnavailableError("Ledger store unavailable") from e
