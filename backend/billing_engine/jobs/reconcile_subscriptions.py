"""
Subscription reconciliation job.

Re-reads every open processor subscription and applies it through the same
state machine the webhooks use, so missed or dropped webhooks are caught up.

Usage:
    python -m billing_engine.jobs.reconcile_subscriptions
"""

import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from billing_engine.errors import BillingError
from billing_engine.integrations.stripe.billing_client import StripeBillingClient, get_billing_client
from billing_engine.models.billing_event import ActorType
from billing_engine.repositories.account_repository import AccountRepository
from billing_engine.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

# Maximum accounts to process per run (processor rate limits)
MAX_ACCOUNTS_PER_RUN = 500

# Pause between processor reads
REQUEST_SPACING_SECONDS = 0.1


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self):
        self.subscriptions_checked = 0
        self.subscriptions_updated = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "subscriptions_checked": self.subscriptions_checked,
            "subscriptions_updated": self.subscriptions_updated,
            "errors": self.errors,
            "duration_seconds": duration,
        }


async def reconcile_subscriptions(
    session: Session,
    client: StripeBillingClient,
    limit: int = MAX_ACCOUNTS_PER_RUN,
    spacing_seconds: float = REQUEST_SPACING_SECONDS,
) -> ReconciliationStats:
    """
    Sync every account that has an open processor subscription.

    Each account is committed on its own; one failure does not stop the run.
    """
    stats = ReconciliationStats()
    handler = BillingWebhookHandler(session, client)
    accounts = AccountRepository(session).list_with_open_subscriptions()[:limit]

    logger.info("Found subscriptions to reconcile", extra={"count": len(accounts)})

    for account in accounts:
        account_id = account.id
        subscription_id = account.external_subscription_id
        stats.subscriptions_checked += 1
        try:
            subscription = await client.retrieve_subscription(subscription_id)
            result = handler.apply_subscription_snapshot(subscription, actor_type=ActorType.CRON)
            session.commit()
            if result.outcome == "applied":
                stats.subscriptions_updated += 1
                logger.info("Subscription reconciled", extra={
                    "account_id": account_id,
                    "subscription_id": subscription_id,
                    "from_state": result.from_state,
                    "to_state": result.to_state,
                })
        except BillingError as e:
            session.rollback()
            stats.errors += 1
            logger.error("Reconciliation failed for subscription", extra={
                "account_id": account_id,
                "subscription_id": subscription_id,
                "error_kind": e.kind,
                "error": e.message,
            })

        if spacing_seconds:
            await asyncio.sleep(spacing_seconds)

    return stats


async def run_reconciliation(client: Optional[StripeBillingClient] = None) -> dict:
    """
    Run the subscription reconciliation job.

    Returns:
        Statistics dictionary with job results
    """
    from billing_engine.database.session import session_scope

    logger.info("Starting subscription reconciliation job")
    try:
        with session_scope() as session:
            stats = await reconcile_subscriptions(session, client or get_billing_client())
    except Exception as e:
        logger.error("Reconciliation job failed", extra={"error": str(e)})
        raise

    result = stats.to_dict()
    logger.info("Reconciliation job completed", extra=result)
    return result


def main():
    """Entry point for running reconciliation job from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        result = asyncio.run(run_reconciliation())
        print(f"Reconciliation completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
