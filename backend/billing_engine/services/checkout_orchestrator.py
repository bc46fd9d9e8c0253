"""
Checkout orchestrator.

The single entry point a client calls to begin a purchase:

1. Reject unknown or free tiers.
2. Allow-listed emails get entitlement directly; no processor call is made.
3. Validate the coupon (read-only). A rejection aborts the checkout.
4. Create-or-fetch the processor customer (lookup by email before create).
5. Trial = tier base trial + coupon bonus days.
6. Create the processor checkout session with price, trial, discount and
   metadata (account_id, tier, coupon_code) for webhook re-association.
7. Only after the session exists, commit the coupon: conditional counter
   increment plus usage row, in one transaction.

Processor failures surface as CheckoutFailedError; nothing is committed for
the coupon unless step 6 succeeded.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from decimal import Decimal
from threading import Lock
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.config.settings import BillingSettings, get_settings
from billing_engine.errors import (
    BillingError,
    CheckoutFailedError,
    InvalidTierError,
    PaymentProcessorError,
    StoreUnavailableError,
    ValidationError,
)
from billing_engine.integrations.stripe.billing_client import StripeBillingClient
from billing_engine.models.account import PAID_TIERS, Account
from billing_engine.models.base import utcnow
from billing_engine.models.billing_event import ActorType, BillingEvent, BillingEventType
from billing_engine.models.pricing_tier import PricingTier
from billing_engine.repositories.account_repository import AccountRepository, normalize_email
from billing_engine.repositories.coupon_repository import CouponRepository
from billing_engine.repositories.pricing_repository import PricingTierRepository
from billing_engine.services.coupon_validator import CouponValidator, ValidationResult
from billing_engine.services.whitelist_resolver import WhitelistGrant, WhitelistResolver

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    """Result of a checkout request."""
    success: bool
    account_id: str
    tier: str
    session_id: Optional[str] = None
    redirect_url: Optional[str] = None
    whitelist_granted: bool = False
    access_level: Optional[str] = None
    discount_applied: Optional[Decimal] = None
    trial_days: Optional[int] = None
    monthly_price: Optional[Decimal] = None
    customer_id: Optional[str] = None
    coupon_code: Optional[str] = None
    message: Optional[str] = None


class _CustomerLocks:
    """
    Per-email asyncio locks, one table per event loop.

    Entries are reference counted and dropped when no request holds or
    waits on them.
    """

    def __init__(self):
        self._tables: "weakref.WeakKeyDictionary" = weakref.WeakKeyDictionary()
        self._guard = Lock()

    def acquire_entry(self, email: str) -> List:
        loop = asyncio.get_running_loop()
        with self._guard:
            table = self._tables.setdefault(loop, {})
            entry = table.setdefault(email, [asyncio.Lock(), 0])
            entry[1] += 1
            return entry

    def release_entry(self, email: str, entry: List) -> None:
        loop = asyncio.get_running_loop()
        with self._guard:
            entry[1] -= 1
            table = self._tables.get(loop)
            if entry[1] <= 0 and table is not None and table.get(email) is entry:
                del table[email]


_customer_locks = _CustomerLocks()


class CheckoutOrchestrator:
    """Composes whitelist, coupon and processor calls into one checkout."""

    def __init__(
        self,
        db_session: Session,
        billing_client: StripeBillingClient,
        settings: Optional[BillingSettings] = None,
    ):
        self.db = db_session
        self.client = billing_client
        self.settings = settings or get_settings()
        self.accounts = AccountRepository(db_session)
        self.coupons = CouponRepository(db_session)
        self.tiers = PricingTierRepository(db_session)
        self.whitelist = WhitelistResolver(db_session)
        self.validator = CouponValidator(db_session)

    def _log_billing_event(
        self,
        event_type: str,
        account_id: str,
        external_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Append to the billing audit trail (committed with the caller's transaction)."""
        self.db.add(BillingEvent(
            account_id=account_id,
            event_type=event_type,
            external_event_id=external_id,
            actor_type=ActorType.USER,
            description=description,
            extra_metadata=metadata,
        ))

    def _commit(self, operation: str, account_id: str, session_id: Optional[str] = None) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Checkout store write failed", extra={
                "operation": operation,
                "account_id": account_id,
                "session_id": session_id,
                "error": str(e),
            })
            raise StoreUnavailableError("Billing store unavailable; please retry") from e

    def _get_paid_tier(self, tier: str) -> PricingTier:
        if tier not in PAID_TIERS:
            raise InvalidTierError(tier)
        pricing = self.tiers.get_tier(tier)
        if pricing is None or not pricing.is_paid:
            raise InvalidTierError(tier)
        if not pricing.external_price_id:
            logger.error("Tier has no processor price", extra={"tier": tier})
            raise InvalidTierError(tier)
        return pricing

    # =========================================================================
    # Whitelist bypass
    # =========================================================================

    def _grant_whitelist(
        self,
        account_id: str,
        email: str,
        phone: Optional[str],
        tier: str,
        grant: WhitelistGrant,
    ) -> CheckoutResult:
        account, _ = self.accounts.get_or_create(account_id, email, phone)
        account.subscription_tier = tier
        account.is_whitelisted = True
        account.whitelist_reason = grant.role
        account.whitelisted_at = utcnow()
        account.subscription_active = True
        self._log_billing_event(
            BillingEventType.WHITELIST_GRANTED,
            account_id,
            description=f"Allow-list grant ({grant.role}, {grant.access_level})",
            metadata={"tier": tier, "access_level": grant.access_level},
        )
        self._commit("whitelist_grant", account_id)

        logger.info("Whitelist entitlement granted", extra={
            "account_id": account_id,
            "tier": tier,
            "role": grant.role,
            "access_level": grant.access_level,
        })
        return CheckoutResult(
            success=True,
            account_id=account_id,
            tier=tier,
            whitelist_granted=True,
            access_level=grant.access_level,
            discount_applied=Decimal("0"),
            trial_days=0,
            message="Access granted via whitelist",
        )

    # =========================================================================
    # Processor resources
    # =========================================================================

    async def _ensure_customer(self, account: Account, phone: Optional[str]) -> str:
        """
        Bind exactly one processor customer to the account.

        Serialized per email within the process; the processor idempotency
        key covers concurrent creation across processes.
        """
        if account.external_customer_id:
            return account.external_customer_id

        entry = _customer_locks.acquire_entry(account.email)
        try:
            async with entry[0]:
                self.db.refresh(account)
                if account.external_customer_id:
                    return account.external_customer_id

                try:
                    customer = await self.client.get_or_create_customer(account.email, phone, account.id)
                except PaymentProcessorError as e:
                    raise CheckoutFailedError(e.message) from e

                bound = self.accounts.set_external_customer_id_if_missing(account.id, customer.id)
                self._commit("bind_customer", account.id)
                if not bound:
                    self.db.refresh(account)
                    return account.external_customer_id
                return customer.id
        finally:
            _customer_locks.release_entry(account.email, entry)

    async def _ensure_processor_coupon(self, validation: ValidationResult, currency: str) -> Optional[str]:
        """Processor coupon id carrying the discount, created on first use."""
        if validation.discount_applied <= 0:
            return None
        if validation.external_coupon_id:
            return validation.external_coupon_id

        try:
            external_id = await self.client.create_coupon(
                validation.coupon_id,
                validation.coupon_code,
                validation.discount_type,
                validation.discount_value,
                currency,
            )
        except PaymentProcessorError as e:
            raise CheckoutFailedError(e.message) from e

        self.coupons.set_external_coupon_id_if_missing(validation.coupon_id, external_id)
        self._commit("bind_coupon", validation.coupon_code)
        return external_id

    # =========================================================================
    # Entry point
    # =========================================================================

    async def create_checkout(
        self,
        account_id: str,
        email: str,
        phone: Optional[str],
        tier: str,
        coupon_code: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Begin a purchase for an account.

        Args:
            account_id: Client account id (created on first checkout)
            email: Account email
            phone: Account phone
            tier: Paid tier to purchase
            coupon_code: Optional promotion code

        Returns:
            CheckoutResult with either a whitelist grant or a session to redirect to

        Raises:
            InvalidTierError: tier is unknown or free
            CouponValidationError: coupon rejected, with the specific reason
            CouponExhaustedError: coupon limit reached between validation and commit
            CheckoutFailedError: processor could not create the customer or session
            StoreUnavailableError: database failure
        """
        email = normalize_email(email)
        tier = (tier or "").strip().lower()
        coupon_code = (coupon_code or "").strip() or None
        if not account_id or not email:
            raise ValidationError("accountId and email are required", reason="MissingField")

        try:
            pricing = self._get_paid_tier(tier)

            grant = self.whitelist.resolve(email)
            if grant.is_whitelisted:
                return self._grant_whitelist(account_id, email, phone, tier, grant)

            validation: Optional[ValidationResult] = None
            if coupon_code:
                validation = self.validator.validate(coupon_code, account_id, email, tier)
                validation.raise_for_rejection()

            account, created = self.accounts.get_or_create(account_id, email, phone)
            if created:
                self._commit("create_account", account_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Checkout store read failed", extra={"account_id": account_id, "error": str(e)})
            raise StoreUnavailableError("Billing store unavailable; please retry") from e

        customer_id = await self._ensure_customer(account, phone)

        trial_days = (pricing.base_trial_days or 0) + (validation.trial_days_granted if validation else 0)
        discount = validation.discount_applied if validation else Decimal("0")
        external_coupon_id = (
            await self._ensure_processor_coupon(validation, pricing.currency) if validation else None
        )

        metadata = {
            "account_id": account_id,
            "tier": tier,
            "coupon_code": validation.coupon_code if validation else "",
            "trial_days": str(trial_days),
        }
        try:
            session = await self.client.create_checkout_session(
                customer_id=customer_id,
                price_id=pricing.external_price_id,
                metadata=metadata,
                trial_days=trial_days,
                success_url=self.settings.checkout_success_url,
                cancel_url=self.settings.checkout_cancel_url,
                external_coupon_id=external_coupon_id,
            )
        except PaymentProcessorError as e:
            logger.error("Checkout session creation failed", extra={
                "account_id": account_id,
                "tier": tier,
                "coupon_code": metadata["coupon_code"],
                "error": e.message,
            })
            raise CheckoutFailedError(e.message) from e

        try:
            if validation:
                self.validator.commit(validation, account_id, email, session.id)
            self._log_billing_event(
                BillingEventType.CHECKOUT_SESSION_CREATED,
                account_id,
                external_id=session.id,
                metadata={"tier": tier, "coupon_code": metadata["coupon_code"], "trial_days": trial_days},
            )
            self._commit("commit_checkout", account_id, session.id)
        except BillingError:
            self.db.rollback()
            logger.warning("Checkout session orphaned", extra={
                "account_id": account_id,
                "session_id": session.id,
                "coupon_code": metadata["coupon_code"],
            })
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Checkout session orphaned by store failure", extra={
                "account_id": account_id,
                "session_id": session.id,
                "coupon_code": metadata["coupon_code"],
                "error": str(e),
            })
            raise StoreUnavailableError("Billing store unavailable; please retry") from e

        logger.info("Checkout session created", extra={
            "account_id": account_id,
            "session_id": session.id,
            "tier": tier,
            "trial_days": trial_days,
            "coupon_code": metadata["coupon_code"],
        })
        return CheckoutResult(
            success=True,
            account_id=account_id,
            tier=tier,
            session_id=session.id,
            redirect_url=session.url,
            discount_applied=discount,
            trial_days=trial_days,
            monthly_price=Decimal(pricing.monthly_price),
            customer_id=customer_id,
            coupon_code=validation.coupon_code if validation else None,
        )

