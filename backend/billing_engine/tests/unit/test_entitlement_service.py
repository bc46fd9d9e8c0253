"""
Tests for entitlement resolution and the past-due grace period.
"""

from datetime import timedelta

import pytest

from billing_engine.errors import EntitlementDeniedError, NotFoundError
from billing_engine.models.base import utcnow
from billing_engine.services.entitlement_service import EntitlementService


@pytest.fixture
def service(db_session, seeded_tiers):
    return EntitlementService(db_session, grace_period_days=3)


class TestResolve:

    def test_active_pro_account(self, service, make_account):
        make_account("acct-1", subscription_tier="pro", subscription_state="active", subscription_active=True)

        entitlement = service.resolve("acct-1")

        assert entitlement.has_access is True
        assert entitlement.effective_tier == "pro"
        assert entitlement.allows("translation")
        assert not entitlement.allows("analytics")
        assert entitlement.monthly_voicemail_limit is None

    def test_free_account(self, service, make_account):
        make_account("acct-1")

        entitlement = service.resolve("acct-1")

        assert entitlement.has_access is False
        assert entitlement.effective_tier == "free"
        assert entitlement.monthly_voicemail_limit == 5
        assert entitlement.features == ["basic_transcription", "basic_spam_detection"]

    def test_whitelisted_account_needs_no_subscription(self, service, make_account):
        make_account("acct-dev", subscription_tier="business", is_whitelisted=True, subscription_active=True)

        entitlement = service.resolve("acct-dev")

        assert entitlement.has_access is True
        assert entitlement.is_whitelisted is True
        assert entitlement.effective_tier == "business"
        assert entitlement.allows("analytics")

    def test_canceled_account_falls_back_to_free(self, service, make_account):
        make_account("acct-1", subscription_tier="pro", subscription_state="canceled")

        entitlement = service.resolve("acct-1")

        assert entitlement.tier == "pro"
        assert entitlement.effective_tier == "free"
        assert not entitlement.allows("translation")

    def test_unknown_account(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            service.resolve("missing")
        assert exc_info.value.reason == "AccountNotFound"


class TestGracePeriod:

    def test_inside_grace_period(self, service, make_account):
        make_account(
            "acct-1",
            subscription_tier="pro",
            subscription_state="past_due",
            subscription_active=True,
            past_due_since=utcnow() - timedelta(days=1),
        )

        entitlement = service.resolve("acct-1")

        assert entitlement.has_access is True
        assert entitlement.in_grace_period is True
        assert entitlement.effective_tier == "pro"
        assert entitlement.grace_period_ends_on is not None

    def test_grace_period_expired(self, service, make_account):
        make_account(
            "acct-1",
            subscription_tier="pro",
            subscription_state="past_due",
            subscription_active=True,
            past_due_since=utcnow() - timedelta(days=4),
        )

        entitlement = service.resolve("acct-1")

        assert entitlement.has_access is False
        assert entitlement.in_grace_period is False
        assert entitlement.effective_tier == "free"

    def test_unlimited_grace_period(self, db_session, seeded_tiers, make_account):
        make_account(
            "acct-1",
            subscription_tier="pro",
            subscription_state="past_due",
            past_due_since=utcnow() - timedelta(days=90),
        )

        entitlement = EntitlementService(db_session, grace_period_days=None).resolve("acct-1")

        assert entitlement.has_access is True
        assert entitlement.grace_period_ends_on is None

    def test_grace_period_from_environment(self, db_session, seeded_tiers, make_account, monkeypatch):
        monkeypatch.setenv("BILLING_GRACE_PERIOD_DAYS", "10")
        make_account(
            "acct-1",
            subscription_tier="pro",
            subscription_state="past_due",
            past_due_since=utcnow() - timedelta(days=5),
        )

        service = EntitlementService(db_session)

        assert service.grace_period_days == 10
        assert service.resolve("acct-1").has_access is True


class TestRequireFeature:

    def test_feature_granted(self, service, make_account):
        make_account("acct-1", subscription_tier="business", subscription_state="active")

        entitlement = service.require_feature("acct-1", "analytics")

        assert entitlement.effective_tier == "business"

    def test_upgrade_required(self, service, make_account):
        make_account("acct-1", subscription_tier="pro", subscription_state="active")

        with pytest.raises(EntitlementDeniedError) as exc_info:
            service.require_feature("acct-1", "analytics")

        error = exc_info.value
        assert error.reason == "plan_upgrade_required"
        assert error.required_tier == "business"
        assert error.http_status == 402
        assert error.to_dict()["requiredTier"] == "business"

    def test_expired_grace_reports_past_due(self, service, make_account):
        make_account(
            "acct-1",
            subscription_tier="pro",
            subscription_state="past_due",
            past_due_since=utcnow() - timedelta(days=7),
        )

        with pytest.raises(EntitlementDeniedError) as exc_info:
            service.require_feature("acct-1", "translation")

        assert exc_info.value.reason == "payment_past_due"
        assert exc_info.value.required_tier == "pro"

    def test_canceled_subscription(self, service, make_account):
        make_account("acct-1", subscription_tier="pro", subscription_state="canceled")

        with pytest.raises(EntitlementDeniedError) as exc_info:
            service.require_feature("acct-1", "translation")

        assert exc_info.value.reason == "subscription_canceled"

    def test_unknown_feature(self, service, make_account):
        make_account("acct-1", subscription_tier="business", subscription_state="active")

        with pytest.raises(EntitlementDeniedError) as exc_info:
            service.require_feature("acct-1", "teleportation")

        assert exc_info.value.reason == "feature_not_entitled"
        assert exc_info.value.required_tier is None
