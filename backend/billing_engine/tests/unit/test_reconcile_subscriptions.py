"""
Tests for the subscription reconciliation job.
"""

import pytest

from billing_engine.integrations.stripe.billing_client import ProcessorSubscription
from billing_engine.jobs.reconcile_subscriptions import reconcile_subscriptions
from billing_engine.models.account import Account


class TestReconcileSubscriptions:

    @pytest.mark.asyncio
    async def test_missed_webhooks_are_applied(self, db_session, fake_client, make_account):
        make_account("acct-1", subscription_tier="pro", subscription_state="trialing",
                     subscription_active=True, external_subscription_id="sub_1", external_customer_id="cus_1")
        make_account("acct-2", subscription_tier="pro", subscription_state="active",
                     subscription_active=True, external_subscription_id="sub_2", external_customer_id="cus_2")
        fake_client.subscriptions["sub_1"] = ProcessorSubscription(id="sub_1", status="active", customer_id="cus_1")
        fake_client.subscriptions["sub_2"] = ProcessorSubscription(id="sub_2", status="canceled", customer_id="cus_2")

        stats = await reconcile_subscriptions(db_session, fake_client, spacing_seconds=0)

        assert stats.subscriptions_checked == 2
        assert stats.subscriptions_updated == 2
        assert stats.errors == 0
        db_session.expire_all()
        assert db_session.get(Account, "acct-1").subscription_state == "active"
        canceled = db_session.get(Account, "acct-2")
        assert canceled.subscription_state == "canceled"
        assert canceled.subscription_tier == "free"
        assert canceled.subscription_active is False

    @pytest.mark.asyncio
    async def test_canceled_and_unsubscribed_accounts_skipped(self, db_session, fake_client, make_account):
        make_account("acct-free")
        make_account("acct-gone", subscription_state="canceled", external_subscription_id="sub_old")

        stats = await reconcile_subscriptions(db_session, fake_client, spacing_seconds=0)

        assert stats.subscriptions_checked == 0

    @pytest.mark.asyncio
    async def test_processor_failure_counted(self, db_session, fake_client, make_account):
        make_account("acct-1", subscription_state="active", external_subscription_id="sub_1")
        fake_client.fail_retrieve = True

        stats = await reconcile_subscriptions(db_session, fake_client, spacing_seconds=0)

        assert stats.errors == 1
        assert stats.subscriptions_updated == 0
        assert stats.to_dict()["subscriptions_checked"] == 1

    @pytest.mark.asyncio
    async def test_unchanged_subscription_is_noop(self, db_session, fake_client, make_account):
        make_account("acct-1", subscription_tier="pro", subscription_state="active",
                     external_subscription_id="sub_1", external_customer_id="cus_1")
        fake_client.subscriptions["sub_1"] = ProcessorSubscription(id="sub_1", status="active", customer_id="cus_1")

        stats = await reconcile_subscriptions(db_session, fake_client, spacing_seconds=0)

        assert stats.subscriptions_updated == 0
        assert stats.errors == 0
