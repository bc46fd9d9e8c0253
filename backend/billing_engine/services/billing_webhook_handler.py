"""
Billing webhook handler with idempotency support.

Processes Stripe webhooks with:
- Signature verification before anything is read
- Event deduplication by atomic insert of the event id
- Compare-and-set account transitions driven by an explicit state table
- Append-only payment ledger and audit trail

The processed-event marker is written in the same transaction as the state
change it guards. If processing fails the rollback removes the marker and
the processor's redelivery is processed normally.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.errors import ConflictError, StaleStateError, StoreUnavailableError
from billing_engine.integrations.stripe.billing_client import (
    ProcessorSubscription,
    StripeBillingClient,
    subscription_from_payload,
)
from billing_engine.models.account import ENTITLED_STATES, PAID_TIERS, Account, SubscriptionState, SubscriptionTier
from billing_engine.models.base import ensure_utc, utcnow
from billing_engine.models.billing_event import ActorType, BillingEvent, BillingEventType
from billing_engine.models.payment_record import PaymentStatus
from billing_engine.models.webhook_event import ProcessedWebhookEvent
from billing_engine.repositories.account_repository import AccountRepository
from billing_engine.services.subscription_state_machine import (
    TransitionOutcome,
    WebhookEventKind,
    derive_subscription_active,
    evaluate_transition,
    map_processor_status,
)
from billing_engine.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

TrialEndingNotifier = Callable[[Account, ProcessorSubscription], None]


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    account_id: Optional[str] = None
    outcome: Optional[str] = None
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    skipped_reason: Optional[str] = None


def _object_id(value: Any) -> Optional[str]:
    """Expandable processor field: either an id string or an object with an id."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription(invoice: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    """Subscription id and metadata of an invoice across API versions."""
    details = invoice.get("subscription_details") or {}
    parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
    subscription_id = (
        _object_id(invoice.get("subscription"))
        or _object_id(parent_details.get("subscription"))
    )
    metadata = details.get("metadata") or parent_details.get("metadata") or {}
    return subscription_id, dict(metadata)


def _same_value(current: Any, new: Any) -> bool:
    if isinstance(current, datetime) or isinstance(new, datetime):
        return ensure_utc(current) == ensure_utc(new)
    return current == new


def log_trial_ending(account: Account, subscription: ProcessorSubscription) -> None:
    """Default notifier: record that a trial ending notice is due."""
    logger.info("Trial ending soon", extra={
        "account_id": account.id,
        "subscription_id": subscription.id,
        "trial_end": subscription.trial_end.isoformat() if subscription.trial_end else None,
    })


class BillingWebhookHandler:
    """
    Handler for Stripe billing webhooks with idempotency.

    Ensures each webhook is processed exactly once using the Stripe event
    id, and that stale or out-of-order events never overwrite newer state.
    """

    def __init__(
        self,
        db_session: Session,
        billing_client: StripeBillingClient,
        trial_ending_notifier: Optional[TrialEndingNotifier] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            db_session: Database session
            billing_client: Client used for signature verification
            trial_ending_notifier: Called on trial_will_end events
        """
        self.db = db_session
        self.client = billing_client
        self.accounts = AccountRepository(db_session)
        self.ledger = UsageLedger(db_session)
        self.notify_trial_ending = trial_ending_notifier or log_trial_ending

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookProcessingResult:
        """
        Verify, de-duplicate and apply one webhook delivery.

        Args:
            raw_payload: Raw request body
            signature_header: Stripe-Signature header

        Returns:
            WebhookProcessingResult (duplicates return processed=False, skipped_reason="duplicate")

        Raises:
            AuthenticityError: Signature or payload invalid; nothing was read or written
            StaleStateError: Account changed concurrently; redelivery will retry
            StoreUnavailableError: Database failure; redelivery will retry
        """
        event = self.client.verify_webhook(raw_payload, signature_header)
        return await self.process_event(event, raw_payload)

    async def process_event(
        self,
        event: Dict[str, Any],
        raw_payload: Optional[bytes] = None,
    ) -> WebhookProcessingResult:
        """Apply an already-verified event."""
        event_id = event["id"]
        event_type = event["type"]
        data_object = (event.get("data") or {}).get("object") or {}

        try:
            marker = self._record_event(event_id, event_type, raw_payload or json.dumps(event, sort_keys=True).encode())
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                logger.info("Duplicate webhook skipped", extra={
                    "event_id": event_id,
                    "event_type": event_type,
                })
                return WebhookProcessingResult(
                    processed=False,
                    message="Duplicate webhook - already processed",
                    event_id=event_id,
                    event_type=event_type,
                    skipped_reason="duplicate",
                )

            result = self._dispatch(event_id, event_type, data_object)
            result.event_id = event_id
            result.event_type = event_type

            marker.account_id = result.account_id
            marker.outcome = result.outcome
            self.db.commit()

            logger.info("Webhook processed", extra={
                "event_id": event_id,
                "event_type": event_type,
                "account_id": result.account_id,
                "outcome": result.outcome,
                "from_state": result.from_state,
                "to_state": result.to_state,
            })
            return result

        except StaleStateError:
            self.db.rollback()
            logger.warning("Webhook lost state race, will be redelivered", extra={
                "event_id": event_id,
                "event_type": event_type,
            })
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Store error processing webhook", extra={
                "event_id": event_id,
                "event_type": event_type,
                "error": str(e),
            })
            raise StoreUnavailableError("Billing store unavailable; retry delivery") from e

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _record_event(self, event_id: str, event_type: str, raw_payload: bytes) -> ProcessedWebhookEvent:
        """Stage the processed-event marker (unique on event id)."""
        marker = ProcessedWebhookEvent(
            external_event_id=event_id,
            event_type=event_type,
            payload_hash=hashlib.sha256(raw_payload).hexdigest(),
            processed_at=utcnow(),
        )
        self.db.add(marker)
        return marker

    def _log_audit_event(
        self,
        event_type: str,
        account_id: Optional[str],
        external_event_id: Optional[str],
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        actor_type: str = ActorType.WEBHOOK,
        description: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> None:
        """Log billing event to audit table."""
        self.db.add(BillingEvent(
            account_id=account_id,
            event_type=event_type,
            from_state=from_state,
            to_state=to_state,
            external_event_id=external_event_id,
            actor_type=actor_type,
            description=description,
            extra_metadata=metadata,
        ))

    def _resolve_account(
        self,
        metadata: Dict[str, Any],
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> Optional[Account]:
        """Metadata account id first, then subscription id, then customer id."""
        account_id = (metadata or {}).get("account_id")
        if account_id:
            account = self.accounts.get_by_id(account_id)
            if account:
                return account
        if subscription_id:
            account = self.accounts.get_by_external_subscription_id(subscription_id)
            if account:
                return account
        if customer_id:
            return self.accounts.get_by_external_customer_id(customer_id)
        return None

    def _customer_binding(self, account: Account, customer_id: Optional[str]) -> Dict[str, Any]:
        """Bind a customer id to the account if neither side is bound yet."""
        if not customer_id or account.external_customer_id:
            return {}
        if self.accounts.get_by_external_customer_id(customer_id) is not None:
            return {}
        return {"external_customer_id": customer_id}

    def _unmatched(self, message: str) -> WebhookProcessingResult:
        return WebhookProcessingResult(
            processed=False,
            message=message,
            outcome="account_not_found",
            skipped_reason="account_not_found",
        )

    def _stale(self, account: Account, event_id: str, subscription_id: Optional[str], actor_type: str) -> WebhookProcessingResult:
        logger.info("Stale subscription event ignored", extra={
            "event_id": event_id,
            "account_id": account.id,
            "event_subscription_id": subscription_id,
            "current_subscription_id": account.external_subscription_id,
            "state": account.subscription_state,
        })
        self._log_audit_event(
            BillingEventType.STALE_EVENT_IGNORED,
            account.id,
            event_id,
            from_state=account.subscription_state,
            actor_type=actor_type,
            metadata={"event_subscription_id": subscription_id},
        )
        return WebhookProcessingResult(
            processed=False,
            message="Stale event for a previous subscription",
            account_id=account.id,
            outcome="ignored_stale",
            from_state=account.subscription_state,
            skipped_reason="stale",
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(
        self,
        account: Account,
        kind: WebhookEventKind,
        target_state: Optional[str],
        event_id: Optional[str],
        extra_values: Optional[Dict[str, Any]] = None,
        actor_type: str = ActorType.WEBHOOK,
    ) -> WebhookProcessingResult:
        """
        Apply a proposed transition with compare-and-set.

        Raises:
            StaleStateError: The account row changed since it was read
        """
        current_state = account.subscription_state
        outcome = evaluate_transition(current_state, kind, target_state)

        if outcome is TransitionOutcome.ILLEGAL:
            logger.warning("Invalid state transition", extra={
                "event_id": event_id,
                "account_id": account.id,
                "from": current_state,
                "to": target_state,
                "event_kind": kind.value,
            })
            self._log_audit_event(
                BillingEventType.TRANSITION_REJECTED,
                account.id,
                event_id,
                from_state=current_state,
                to_state=target_state,
                actor_type=actor_type,
                metadata={"event_kind": kind.value},
            )
            return WebhookProcessingResult(
                processed=False,
                message=f"Transition {current_state} -> {target_state} not allowed for {kind.value}",
                account_id=account.id,
                outcome="illegal_transition",
                from_state=current_state,
                to_state=target_state,
                skipped_reason="illegal_transition",
            )

        values = dict(extra_values or {})
        if outcome is TransitionOutcome.APPLY:
            now = utcnow()
            values["subscription_state"] = target_state
            values["subscription_active"] = derive_subscription_active(target_state, account.is_whitelisted)
            values["state_changed_at"] = now
            values["past_due_since"] = now if target_state == SubscriptionState.PAST_DUE.value else None
            if target_state == SubscriptionState.CANCELED.value and not account.is_whitelisted:
                values["subscription_tier"] = SubscriptionTier.FREE.value

        if values:
            applied = self.accounts.compare_and_set_state(
                account.id,
                current_state,
                values,
                expected_subscription_id=account.external_subscription_id,
                check_subscription_id=True,
            )
            if not applied:
                raise StaleStateError(account.id, current_state)

        if outcome is TransitionOutcome.APPLY:
            self._log_audit_event(
                BillingEventType.SUBSCRIPTION_STATE_CHANGED,
                account.id,
                event_id,
                from_state=current_state,
                to_state=target_state,
                actor_type=actor_type,
                metadata={"event_kind": kind.value},
            )
            return WebhookProcessingResult(
                processed=True,
                message=f"Subscription {current_state} -> {target_state}",
                account_id=account.id,
                outcome="applied",
                from_state=current_state,
                to_state=target_state,
            )

        return WebhookProcessingResult(
            processed=True,
            message="No state change",
            account_id=account.id,
            outcome="noop",
            from_state=current_state,
            to_state=current_state,
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _dispatch(self, event_id: str, event_type: str, data_object: Dict[str, Any]) -> WebhookProcessingResult:
        kind = WebhookEventKind.from_event_type(event_type)
        if kind is None:
            logger.info("Unhandled webhook event type acknowledged", extra={
                "event_id": event_id,
                "event_type": event_type,
            })
            return WebhookProcessingResult(
                processed=True,
                message=f"Unhandled event type: {event_type}",
                outcome="unhandled",
            )

        if kind is WebhookEventKind.CHECKOUT_COMPLETED:
            return self._handle_checkout_completed(event_id, data_object)
        if kind in (WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED, WebhookEventKind.INVOICE_PAYMENT_FAILED):
            return self._handle_invoice(kind, event_id, data_object)
        if kind is WebhookEventKind.SUBSCRIPTION_UPDATED:
            return self.apply_subscription_snapshot(subscription_from_payload(data_object), event_id)
        if kind is WebhookEventKind.SUBSCRIPTION_DELETED:
            return self._handle_subscription_deleted(event_id, data_object)
        return self._handle_trial_will_end(event_id, data_object)

    def _handle_checkout_completed(self, event_id: str, session: Dict[str, Any]) -> WebhookProcessingResult:
        metadata = dict(session.get("metadata") or {})
        account_id = metadata.get("account_id") or session.get("client_reference_id")
        subscription_id = _object_id(session.get("subscription"))
        customer_id = _object_id(session.get("customer"))

        if session.get("mode") not in (None, "subscription") or not subscription_id:
            return WebhookProcessingResult(
                processed=True,
                message="Checkout session has no subscription",
                account_id=account_id,
                outcome="unhandled",
            )

        account = self._resolve_account({"account_id": account_id}, subscription_id, customer_id)
        if account is None and account_id:
            email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")
            if email:
                try:
                    account, _ = self.accounts.get_or_create(account_id, email)
                except ConflictError:
                    logger.warning("Checkout email bound to another account", extra={
                        "event_id": event_id,
                        "account_id": account_id,
                    })
                    account = None
        if account is None:
            logger.warning("Account not found for checkout webhook", extra={
                "event_id": event_id,
                "account_id": account_id,
                "session_id": session.get("id"),
            })
            return self._unmatched("Account not found")

        tier = metadata.get("tier")
        if (
            subscription_id == account.external_subscription_id
            and account.subscription_state != SubscriptionState.NONE.value
        ):
            # Subscription events got here first; only the tier can still be missing
            if (
                tier in PAID_TIERS
                and tier != account.subscription_tier
                and account.subscription_state in ENTITLED_STATES
            ):
                return self._transition(
                    account,
                    WebhookEventKind.CHECKOUT_COMPLETED,
                    None,
                    event_id,
                    {"subscription_tier": tier},
                )
            return self._stale(account, event_id, subscription_id, ActorType.WEBHOOK)

        trial_days = int(metadata.get("trial_days") or 0)
        target = SubscriptionState.TRIALING.value if trial_days > 0 else SubscriptionState.ACTIVE.value
        values: Dict[str, Any] = {
            "external_subscription_id": subscription_id,
            "cancel_at_period_end": False,
            "trial_end": utcnow() + timedelta(days=trial_days) if trial_days > 0 else None,
        }
        if tier in PAID_TIERS:
            values["subscription_tier"] = tier
        values.update(self._customer_binding(account, customer_id))

        return self._transition(account, WebhookEventKind.CHECKOUT_COMPLETED, target, event_id, values)

    def _handle_invoice(
        self,
        kind: WebhookEventKind,
        event_id: str,
        invoice: Dict[str, Any],
    ) -> WebhookProcessingResult:
        subscription_id, metadata = _invoice_subscription(invoice)
        customer_id = _object_id(invoice.get("customer"))
        account = self._resolve_account(metadata, subscription_id, customer_id)
        succeeded = kind is WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED

        amount_cents = invoice.get("amount_paid") if succeeded else invoice.get("amount_due")
        self.ledger.record_payment(
            external_event_id=event_id,
            account_id=account.id if account else None,
            amount=Decimal(int(amount_cents or 0)) / Decimal(100),
            currency=invoice.get("currency") or "usd",
            status=PaymentStatus.SUCCEEDED.value if succeeded else PaymentStatus.FAILED.value,
            external_invoice_id=invoice.get("id"),
            external_subscription_id=subscription_id,
        )

        if account is None:
            logger.warning("Account not found for invoice webhook", extra={
                "event_id": event_id,
                "subscription_id": subscription_id,
                "customer_id": customer_id,
            })
            return self._unmatched("Payment recorded; account not found")

        self._log_audit_event(
            BillingEventType.PAYMENT_SUCCEEDED if succeeded else BillingEventType.PAYMENT_FAILED,
            account.id,
            event_id,
            from_state=account.subscription_state,
            metadata={"invoice_id": invoice.get("id"), "amount_cents": amount_cents},
        )

        if (
            subscription_id
            and account.external_subscription_id
            and subscription_id != account.external_subscription_id
        ):
            return self._stale(account, event_id, subscription_id, ActorType.WEBHOOK)

        if succeeded:
            target = (
                SubscriptionState.ACTIVE.value
                if account.subscription_state == SubscriptionState.PAST_DUE.value
                else None
            )
        else:
            target = SubscriptionState.PAST_DUE.value

        return self._transition(account, kind, target, event_id)

    def apply_subscription_snapshot(
        self,
        subscription: ProcessorSubscription,
        event_id: Optional[str] = None,
        actor_type: str = ActorType.WEBHOOK,
    ) -> WebhookProcessingResult:
        """
        Sync an account from a processor subscription object.

        Used for customer.subscription.updated webhooks, for manual refreshes
        and by the reconciliation job. Does not commit.
        """
        account = self._resolve_account(subscription.metadata, subscription.id, subscription.customer_id)
        if account is None:
            logger.warning("Account not found for subscription", extra={
                "event_id": event_id,
                "subscription_id": subscription.id,
            })
            return self._unmatched("Account not found")

        if account.external_subscription_id and account.external_subscription_id != subscription.id:
            return self._stale(account, event_id, subscription.id, actor_type)

        target = map_processor_status(subscription.status)
        if target is None:
            logger.info("Untracked processor subscription status", extra={
                "event_id": event_id,
                "account_id": account.id,
                "status": subscription.status,
            })

        values: Dict[str, Any] = {
            "external_subscription_id": subscription.id,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "trial_end": subscription.trial_end,
            "cancel_at_period_end": subscription.cancel_at_period_end,
        }
        tier = subscription.metadata.get("tier")
        if tier in PAID_TIERS and (target or account.subscription_state) in ENTITLED_STATES:
            values["subscription_tier"] = tier
        values.update(self._customer_binding(account, subscription.customer_id))

        if evaluate_transition(account.subscription_state, WebhookEventKind.SUBSCRIPTION_UPDATED, target) is TransitionOutcome.NOOP:
            unchanged = all(_same_value(getattr(account, key), value) for key, value in values.items())
            if unchanged:
                return WebhookProcessingResult(
                    processed=True,
                    message="No state change",
                    account_id=account.id,
                    outcome="noop",
                    from_state=account.subscription_state,
                    to_state=account.subscription_state,
                )

        return self._transition(
            account, WebhookEventKind.SUBSCRIPTION_UPDATED, target, event_id, values, actor_type
        )

    def _handle_subscription_deleted(self, event_id: str, data_object: Dict[str, Any]) -> WebhookProcessingResult:
        subscription = subscription_from_payload(data_object)
        account = self._resolve_account(subscription.metadata, subscription.id, subscription.customer_id)
        if account is None:
            logger.warning("Account not found for subscription deletion", extra={
                "event_id": event_id,
                "subscription_id": subscription.id,
            })
            return self._unmatched("Account not found")

        if account.external_subscription_id and account.external_subscription_id != subscription.id:
            return self._stale(account, event_id, subscription.id, ActorType.WEBHOOK)

        values = {
            "external_subscription_id": subscription.id,
            "cancel_at_period_end": False,
        }
        return self._transition(
            account,
            WebhookEventKind.SUBSCRIPTION_DELETED,
            SubscriptionState.CANCELED.value,
            event_id,
            values,
        )

    def _handle_trial_will_end(self, event_id: str, data_object: Dict[str, Any]) -> WebhookProcessingResult:
        subscription = subscription_from_payload(data_object)
        account = self._resolve_account(subscription.metadata, subscription.id, subscription.customer_id)
        if account is None:
            return self._unmatched("Account not found")

        self._log_audit_event(
            BillingEventType.TRIAL_WILL_END,
            account.id,
            event_id,
            from_state=account.subscription_state,
            metadata={"trial_end": subscription.trial_end.isoformat() if subscription.trial_end else None},
        )
        try:
            self.notify_trial_ending(account, subscription)
        except Exception:
            logger.exception("Trial ending notification failed", extra={
                "event_id": event_id,
                "account_id": account.id,
            })

        return WebhookProcessingResult(
            processed=True,
            message="Trial ending notification dispatched",
            account_id=account.id,
            outcome="notified",
            from_state=account.subscription_state,
            to_state=account.subscription_state,
        )

