"""
Tests for checkout orchestration.

Test classes:
- TestTierValidation: only paid tiers can be purchased
- TestWhitelistBypass: allow-listed emails never reach the processor
- TestPaidCheckout: trial, discount, metadata and coupon commit
- TestFailureSemantics: nothing is committed when the processor fails
"""

import logging
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from billing_engine.config.settings import BillingSettings
from billing_engine.errors import (
    CheckoutFailedError,
    ConflictError,
    CouponValidationError,
    InvalidTierError,
    PaymentProcessorError,
    StoreUnavailableError,
    ValidationError,
)
from billing_engine.models.account import Account
from billing_engine.models.billing_event import BillingEvent, BillingEventType
from billing_engine.models.coupon import Coupon, CouponUsage
from billing_engine.services.checkout_orchestrator import CheckoutOrchestrator

SETTINGS = BillingSettings(app_base_url="https://app.example.com")


@pytest.fixture
def orchestrator(db_session, seeded_tiers, fake_client):
    return CheckoutOrchestrator(db_session, fake_client, settings=SETTINGS)


def strict_client() -> MagicMock:
    """A processor client that records every call."""
    client = MagicMock()
    client.get_or_create_customer = AsyncMock()
    client.create_coupon = AsyncMock()
    client.create_checkout_session = AsyncMock()
    return client


class TestTierValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tier", ["free", "platinum", ""])
    async def test_non_paid_tiers_rejected(self, orchestrator, fake_client, tier):
        with pytest.raises(InvalidTierError):
            await orchestrator.create_checkout("acct-1", "a@example.com", None, tier)

        assert fake_client.sessions == []

    @pytest.mark.asyncio
    async def test_tier_is_case_insensitive(self, orchestrator):
        result = await orchestrator.create_checkout("acct-1", "a@example.com", None, " PRO ")

        assert result.tier == "pro"

    @pytest.mark.asyncio
    async def test_missing_account_id(self, orchestrator):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_checkout("", "a@example.com", None, "pro")
        assert exc_info.value.reason == "MissingField"


class TestWhitelistBypass:

    @pytest.mark.asyncio
    async def test_whitelisted_email_granted_without_processor(self, db_session, seeded_tiers, make_whitelist_entry):
        make_whitelist_entry("qa@example.com", role="tester", access_level="full")
        client = strict_client()
        orchestrator = CheckoutOrchestrator(db_session, client, settings=SETTINGS)

        result = await orchestrator.create_checkout("acct-qa", "QA@example.com", "+15550100", "business", "WELCOME30")

        assert result.success is True
        assert result.whitelist_granted is True
        assert result.access_level == "full"
        assert result.session_id is None
        client.get_or_create_customer.assert_not_called()
        client.create_coupon.assert_not_called()
        client.create_checkout_session.assert_not_called()

        db_session.expire_all()
        account = db_session.get(Account, "acct-qa")
        assert account.subscription_tier == "business"
        assert account.is_whitelisted is True
        assert account.subscription_active is True
        assert account.whitelist_reason == "tester"
        assert account.subscription_state == "none"
        assert db_session.query(BillingEvent).filter(
            BillingEvent.event_type == BillingEventType.WHITELIST_GRANTED
        ).count() == 1

    @pytest.mark.asyncio
    async def test_expired_entry_goes_through_payment(self, orchestrator, fake_client, make_whitelist_entry):
        make_whitelist_entry("qa@example.com", is_active=False)

        result = await orchestrator.create_checkout("acct-qa", "qa@example.com", None, "pro")

        assert result.whitelist_granted is False
        assert len(fake_client.sessions) == 1


class TestPaidCheckout:

    @pytest.mark.asyncio
    async def test_welcome30_checkout(self, orchestrator, fake_client, make_coupon, db_session, seeded_tiers):
        coupon = make_coupon(
            "WELCOME30",
            discount_value=Decimal("30"),
            bonus_trial_days=14,
            max_uses=1000,
            max_uses_per_account=1,
            first_time_only=True,
        )

        result = await orchestrator.create_checkout("acct-1", "New@Example.com", "+15550100", "pro", "welcome30")

        assert result.success is True
        assert result.session_id == "cs_test_1"
        assert result.redirect_url == "https://checkout.stripe.test/cs_test_1"
        assert result.discount_applied == Decimal("1.047")
        assert result.trial_days == 21
        assert result.coupon_code == "WELCOME30"

        session = fake_client.sessions[0]
        assert session["price_id"] == seeded_tiers["pro"].external_price_id
        assert session["trial_days"] == 21
        assert session["external_coupon_id"] == "stripe_coupon_WELCOME30"
        assert session["metadata"] == {
            "account_id": "acct-1",
            "tier": "pro",
            "coupon_code": "WELCOME30",
            "trial_days": "21",
        }

        db_session.expire_all()
        coupon = db_session.get(Coupon, coupon.id)
        assert coupon.current_uses == 1
        assert coupon.external_coupon_id == "stripe_coupon_WELCOME30"
        usage = db_session.query(CouponUsage).one()
        assert usage.external_session_id == "cs_test_1"
        assert usage.account_id == "acct-1"

    @pytest.mark.asyncio
    async def test_checkout_without_coupon_uses_base_trial(self, orchestrator, fake_client, db_session):
        result = await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro")

        assert result.trial_days == 7
        assert result.discount_applied == Decimal("0")
        assert fake_client.sessions[0]["external_coupon_id"] is None
        assert fake_client.sessions[0]["metadata"]["coupon_code"] == ""

        db_session.expire_all()
        account = db_session.get(Account, "acct-1")
        assert account.external_customer_id == "cus_1"
        assert account.subscription_state == "none"
        assert db_session.query(BillingEvent).filter(
            BillingEvent.event_type == BillingEventType.CHECKOUT_SESSION_CREATED
        ).one().external_event_id == "cs_test_1"

    @pytest.mark.asyncio
    async def test_business_tier_has_no_base_trial(self, orchestrator):
        result = await orchestrator.create_checkout("acct-1", "a@example.com", None, "business")

        assert result.trial_days == 0
        assert result.monthly_price == Decimal("9.99")

    @pytest.mark.asyncio
    async def test_trial_only_coupon_skips_processor_coupon(self, orchestrator, fake_client, make_coupon):
        make_coupon("TRIAL14", discount_value=Decimal("0"), bonus_trial_days=14)

        result = await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro", "TRIAL14")

        assert result.trial_days == 21
        assert fake_client.coupons == {}
        assert fake_client.sessions[0]["external_coupon_id"] is None

    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(self, orchestrator, fake_client, make_account):
        make_account("acct-1", email="a@example.com", external_customer_id="cus_existing")

        await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro")

        assert fake_client.customer_create_calls == 0
        assert fake_client.sessions[0]["customer_id"] == "cus_existing"

    @pytest.mark.asyncio
    async def test_email_owned_by_other_account(self, orchestrator, make_account):
        make_account("acct-owner", email="shared@example.com")

        with pytest.raises(ConflictError):
            await orchestrator.create_checkout("acct-other", "shared@example.com", None, "pro")


class TestFailureSemantics:

    @pytest.mark.asyncio
    async def test_rejected_coupon_aborts_checkout(self, orchestrator, fake_client):
        with pytest.raises(CouponValidationError) as exc_info:
            await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro", "BOGUS")

        assert exc_info.value.reason == "CodeNotFound"
        assert fake_client.sessions == []
        assert fake_client.customer_create_calls == 0

    @pytest.mark.asyncio
    async def test_session_failure_commits_no_coupon(self, orchestrator, fake_client, make_coupon, db_session):
        coupon = make_coupon("WELCOME30", max_uses=10)
        fake_client.fail_session_creation = True

        with pytest.raises(CheckoutFailedError) as exc_info:
            await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro", "WELCOME30")

        assert exc_info.value.retryable is True
        assert "Card processor unavailable" in exc_info.value.message
        db_session.expire_all()
        assert db_session.get(Coupon, coupon.id).current_uses == 0
        assert db_session.query(CouponUsage).count() == 0
        assert db_session.query(BillingEvent).filter(
            BillingEvent.event_type == BillingEventType.CHECKOUT_SESSION_CREATED
        ).count() == 0

    @pytest.mark.asyncio
    async def test_customer_failure_is_checkout_failure(self, db_session, seeded_tiers):
        client = strict_client()
        client.get_or_create_customer.side_effect = PaymentProcessorError("timeout", retryable=True)
        orchestrator = CheckoutOrchestrator(db_session, client, settings=SETTINGS)

        with pytest.raises(CheckoutFailedError):
            await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro")

        client.create_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhausted_between_validation_and_commit(self, orchestrator, make_coupon, db_session):
        coupon = make_coupon("LAST1", max_uses=1)
        original_commit = orchestrator.validator.commit

        def commit_after_competitor(validation, account_id, email, session_id):
            db_session.query(Coupon).filter(Coupon.id == coupon.id).update({Coupon.current_uses: 1})
            return original_commit(validation, account_id, email, session_id)

        orchestrator.validator.commit = commit_after_competitor

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro", "LAST1")

        assert exc_info.value.reason == "CouponExhausted"
        assert db_session.query(CouponUsage).count() == 0

    @pytest.mark.asyncio
    async def test_store_failure_at_commit_is_retryable(self, orchestrator, fake_client, make_coupon, db_session, caplog):
        coupon = make_coupon("WELCOME30", max_uses=10)
        failure = OperationalError("UPDATE coupons", {}, Exception("database is locked"))

        with patch.object(orchestrator.validator.coupons, "try_increment_usage", side_effect=failure):
            with caplog.at_level(logging.ERROR, logger="billing_engine.services.checkout_orchestrator"):
                with pytest.raises(StoreUnavailableError) as exc_info:
                    await orchestrator.create_checkout("acct-1", "a@example.com", None, "pro", "WELCOME30")

        assert exc_info.value.retryable is True
        orphaned = [r for r in caplog.records if getattr(r, "session_id", None)]
        assert [r.session_id for r in orphaned] == [fake_client.sessions[0]["id"]]
        db_session.expire_all()
        assert db_session.get(Coupon, coupon.id).current_uses == 0
        assert db_session.query(CouponUsage).count() == 0
