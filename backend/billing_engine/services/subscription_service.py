"""
Subscription management for an account.

Status reads are local unless a refresh is requested; a refresh reads the
processor subscription and applies it through the same state machine the
webhooks use. Cancellation is scheduled at period end; the final
customer.subscription.deleted webhook performs the transition.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.config.settings import get_settings
from billing_engine.errors import (
    NotFoundError,
    StaleStateError,
    StoreUnavailableError,
    ValidationError,
)
from billing_engine.integrations.stripe.billing_client import StripeBillingClient
from billing_engine.models.account import Account, SubscriptionState
from billing_engine.models.billing_event import ActorType, BillingEvent, BillingEventType
from billing_engine.repositories.account_repository import AccountRepository
from billing_engine.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionInfo:
    """Current subscription information for an account."""
    account_id: str
    tier: str
    status: str
    is_active: bool
    can_access_features: bool
    is_whitelisted: bool
    subscription_id: Optional[str]
    current_period_end: Optional[datetime]
    trial_end: Optional[datetime]
    cancel_at_period_end: bool
    downgraded_reason: Optional[str] = None


class SubscriptionService:
    """Reads and manages the processor subscription of one account."""

    def __init__(self, db_session: Session, billing_client: StripeBillingClient):
        self.db = db_session
        self.client = billing_client
        self.accounts = AccountRepository(db_session)
        self.grace_period_days = get_settings().grace_period_days

    def _get_account(self, account_id: str) -> Account:
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", reason="AccountNotFound")
        return account

    def _downgraded_reason(self, account: Account, can_access: bool) -> Optional[str]:
        if account.is_whitelisted:
            return None
        state = account.subscription_state
        if state == SubscriptionState.CANCELED.value:
            return "Subscription canceled"
        if state == SubscriptionState.PAST_DUE.value:
            if can_access:
                return "Payment failed - in grace period"
            return "Payment failed - grace period expired"
        if state == SubscriptionState.NONE.value:
            return "No active subscription"
        return None

    def _to_info(self, account: Account) -> SubscriptionInfo:
        can_access = account.allows_access(self.grace_period_days)
        return SubscriptionInfo(
            account_id=account.id,
            tier=account.subscription_tier,
            status=account.subscription_state,
            is_active=bool(account.subscription_active),
            can_access_features=can_access,
            is_whitelisted=bool(account.is_whitelisted),
            subscription_id=account.external_subscription_id,
            current_period_end=account.current_period_end,
            trial_end=account.trial_end,
            cancel_at_period_end=bool(account.cancel_at_period_end),
            downgraded_reason=self._downgraded_reason(account, can_access),
        )

    async def get_subscription_status(self, account_id: str, refresh: bool = False) -> SubscriptionInfo:
        """
        Get the subscription status of an account.

        Args:
            account_id: Account id
            refresh: Re-read the processor subscription and apply it first

        Raises:
            NotFoundError: Unknown account
            PaymentProcessorError: Refresh failed after retries
            StaleStateError: A webhook changed the account during the refresh
        """
        try:
            account = self._get_account(account_id)
        except SQLAlchemyError as e:
            logger.error("Subscription lookup failed", extra={"account_id": account_id, "error": str(e)})
            raise StoreUnavailableError("Billing store unavailable") from e

        if refresh and account.external_subscription_id:
            subscription = await self.client.retrieve_subscription(account.external_subscription_id)
            handler = BillingWebhookHandler(self.db, self.client)
            try:
                result = handler.apply_subscription_snapshot(subscription, actor_type=ActorType.USER)
                self.db.commit()
            except StaleStateError:
                self.db.rollback()
                raise
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("Subscription refresh failed", extra={"account_id": account_id, "error": str(e)})
                raise StoreUnavailableError("Billing store unavailable") from e

            logger.info("Subscription refreshed from processor", extra={
                "account_id": account_id,
                "subscription_id": subscription.id,
                "outcome": result.outcome,
            })
            self.db.refresh(account)

        return self._to_info(account)

    async def cancel_subscription(self, account_id: str) -> SubscriptionInfo:
        """
        Schedule cancellation at the end of the current period.

        Access continues until the period ends.

        Raises:
            NotFoundError: Unknown account
            ValidationError: No open subscription to cancel
            PaymentProcessorError: Processor rejected the change
        """
        account = self._get_account(account_id)
        if (
            not account.external_subscription_id
            or account.subscription_state in (SubscriptionState.NONE.value, SubscriptionState.CANCELED.value)
        ):
            raise ValidationError("No active subscription to cancel", reason="NoActiveSubscription")

        expected_state = account.subscription_state
        subscription = await self.client.schedule_cancellation(account.external_subscription_id)

        try:
            applied = self.accounts.compare_and_set_state(
                account_id,
                expected_state,
                {"cancel_at_period_end": True, "current_period_end": subscription.current_period_end},
                expected_subscription_id=subscription.id,
                check_subscription_id=True,
            )
            if not applied:
                raise StaleStateError(account_id, expected_state)
            self.db.add(BillingEvent(
                account_id=account_id,
                event_type=BillingEventType.SUBSCRIPTION_CANCEL_SCHEDULED,
                from_state=expected_state,
                to_state=expected_state,
                actor_type=ActorType.USER,
                description="Cancellation scheduled at period end",
                extra_metadata={"subscription_id": subscription.id},
            ))
            self.db.commit()
        except StaleStateError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to record cancellation", extra={
                "account_id": account_id,
                "subscription_id": subscription.id,
                "error": str(e),
            })
            raise StoreUnavailableError("Billing store unavailable") from e

        logger.info("Subscription cancellation scheduled", extra={
            "account_id": account_id,
            "subscription_id": subscription.id,
            "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
        })
        self.db.refresh(account)
        return self._to_info(account)

