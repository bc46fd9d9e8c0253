"""
Tests for subscription status reads, manual refresh and cancellation.
"""

from datetime import timedelta

import pytest

from billing_engine.errors import NotFoundError, StaleStateError, ValidationError
from billing_engine.integrations.stripe.billing_client import ProcessorSubscription
from billing_engine.models.account import Account
from billing_engine.models.base import utcnow
from billing_engine.models.billing_event import BillingEvent, BillingEventType
from billing_engine.services.subscription_service import SubscriptionService


@pytest.fixture
def service(db_session, fake_client):
    return SubscriptionService(db_session, fake_client)


def processor_subscription(status: str, subscription_id: str = "sub_1", **fields) -> ProcessorSubscription:
    now = utcnow()
    values = {
        "customer_id": "cus_1",
        "current_period_start": now,
        "current_period_end": now + timedelta(days=30),
        "metadata": {"account_id": "acct-1"},
    }
    values.update(fields)
    return ProcessorSubscription(id=subscription_id, status=status, **values)


class TestStatus:

    @pytest.mark.asyncio
    async def test_local_status(self, service, make_account):
        make_account("acct-1", subscription_tier="pro", subscription_state="active",
                     subscription_active=True, external_subscription_id="sub_1")

        info = await service.get_subscription_status("acct-1")

        assert info.status == "active"
        assert info.tier == "pro"
        assert info.can_access_features is True
        assert info.downgraded_reason is None

    @pytest.mark.asyncio
    async def test_downgraded_reasons(self, service, make_account):
        make_account("acct-none")
        make_account("acct-canceled", subscription_state="canceled")
        make_account("acct-grace", subscription_tier="pro", subscription_state="past_due",
                     past_due_since=utcnow() - timedelta(hours=1))
        make_account("acct-lapsed", subscription_tier="pro", subscription_state="past_due",
                     past_due_since=utcnow() - timedelta(days=10))

        reasons = {
            account_id: (await service.get_subscription_status(account_id)).downgraded_reason
            for account_id in ("acct-none", "acct-canceled", "acct-grace", "acct-lapsed")
        }

        assert reasons == {
            "acct-none": "No active subscription",
            "acct-canceled": "Subscription canceled",
            "acct-grace": "Payment failed - in grace period",
            "acct-lapsed": "Payment failed - grace period expired",
        }

    @pytest.mark.asyncio
    async def test_unknown_account(self, service):
        with pytest.raises(NotFoundError):
            await service.get_subscription_status("missing")

    @pytest.mark.asyncio
    async def test_refresh_applies_processor_state(self, service, fake_client, make_account, db_session):
        make_account("acct-1", subscription_tier="pro", subscription_state="trialing",
                     subscription_active=True, external_subscription_id="sub_1")
        fake_client.subscriptions["sub_1"] = processor_subscription("active")

        info = await service.get_subscription_status("acct-1", refresh=True)

        assert info.status == "active"
        assert info.current_period_end is not None
        event = db_session.query(BillingEvent).filter(
            BillingEvent.event_type == BillingEventType.SUBSCRIPTION_STATE_CHANGED
        ).one()
        assert event.actor_type == "user"
        assert event.from_state == "trialing"
        assert event.to_state == "active"

    @pytest.mark.asyncio
    async def test_refresh_without_subscription_is_local(self, service, fake_client, make_account):
        make_account("acct-1")
        fake_client.fail_retrieve = True

        info = await service.get_subscription_status("acct-1", refresh=True)

        assert info.status == "none"


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, service, fake_client, make_account, db_session):
        make_account("acct-1", subscription_tier="pro", subscription_state="active",
                     subscription_active=True, external_subscription_id="sub_1")
        fake_client.subscriptions["sub_1"] = processor_subscription("active")

        info = await service.cancel_subscription("acct-1")

        assert fake_client.canceled == ["sub_1"]
        assert info.cancel_at_period_end is True
        assert info.status == "active"
        assert info.can_access_features is True
        assert db_session.query(BillingEvent).filter(
            BillingEvent.event_type == BillingEventType.SUBSCRIPTION_CANCEL_SCHEDULED
        ).count() == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state,subscription_id", [
        ("none", None),
        ("canceled", "sub_1"),
        ("active", None),
    ])
    async def test_nothing_to_cancel(self, service, fake_client, make_account, state, subscription_id):
        make_account("acct-1", subscription_state=state, external_subscription_id=subscription_id)

        with pytest.raises(ValidationError) as exc_info:
            await service.cancel_subscription("acct-1")

        assert exc_info.value.reason == "NoActiveSubscription"
        assert fake_client.canceled == []

    @pytest.mark.asyncio
    async def test_state_changed_during_cancel(self, service, fake_client, make_account, db_session):
        make_account("acct-1", subscription_tier="pro", subscription_state="active",
                     subscription_active=True, external_subscription_id="sub_1")
        fake_client.subscriptions["sub_1"] = processor_subscription("active")
        schedule = fake_client.schedule_cancellation

        async def payment_failed_meanwhile(subscription_id):
            result = await schedule(subscription_id)
            db_session.query(Account).filter(Account.id == "acct-1").update(
                {Account.subscription_state: "past_due"}, synchronize_session="fetch"
            )
            db_session.commit()
            return result

        fake_client.schedule_cancellation = payment_failed_meanwhile

        with pytest.raises(StaleStateError):
            await service.cancel_subscription("acct-1")

        db_session.expire_all()
        account = db_session.get(Account, "acct-1")
        assert account.subscription_state == "past_due"
        assert account.cancel_at_period_end is False
