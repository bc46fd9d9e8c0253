r"""
Subscription state machine.

Explicit table of (current state, event kind) -> allowed target states.
Anything not in the table is an illegal transition: the reconciler logs and
audits it and acknowledges the event without changing state.

    none -----> trialing -----> active <----> past_due
      \            |              |              |
       \           v              v              v
        `------------------> canceled <----------'

canceled is terminal for its subscription id; only a checkout completion
for a new subscription id starts another lifecycle.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from billing_engine.models.account import ENTITLED_STATES, SubscriptionState


class WebhookEventKind(str, Enum):
    """Processor event types the reconciler understands."""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"

    @classmethod
    def from_event_type(cls, event_type: str) -> Optional["WebhookEventKind"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


class TransitionOutcome(str, Enum):
    APPLY = "apply"
    NOOP = "noop"
    ILLEGAL = "illegal"


_NONE = SubscriptionState.NONE.value
_TRIALING = SubscriptionState.TRIALING.value
_ACTIVE = SubscriptionState.ACTIVE.value
_PAST_DUE = SubscriptionState.PAST_DUE.value
_CANCELED = SubscriptionState.CANCELED.value

_STARTS = frozenset({_TRIALING, _ACTIVE})

TRANSITIONS: Dict[str, Dict[WebhookEventKind, FrozenSet[str]]] = {
    _NONE: {
        WebhookEventKind.CHECKOUT_COMPLETED: _STARTS,
        WebhookEventKind.SUBSCRIPTION_UPDATED: frozenset({_TRIALING, _ACTIVE, _PAST_DUE, _CANCELED}),
        WebhookEventKind.SUBSCRIPTION_DELETED: frozenset({_CANCELED}),
    },
    _TRIALING: {
        WebhookEventKind.CHECKOUT_COMPLETED: _STARTS,
        WebhookEventKind.INVOICE_PAYMENT_FAILED: frozenset({_PAST_DUE}),
        WebhookEventKind.SUBSCRIPTION_UPDATED: frozenset({_ACTIVE, _PAST_DUE, _CANCELED}),
        WebhookEventKind.SUBSCRIPTION_DELETED: frozenset({_CANCELED}),
    },
    _ACTIVE: {
        WebhookEventKind.CHECKOUT_COMPLETED: _STARTS,
        WebhookEventKind.INVOICE_PAYMENT_FAILED: frozenset({_PAST_DUE}),
        WebhookEventKind.SUBSCRIPTION_UPDATED: frozenset({_PAST_DUE, _CANCELED}),
        WebhookEventKind.SUBSCRIPTION_DELETED: frozenset({_CANCELED}),
    },
    _PAST_DUE: {
        WebhookEventKind.CHECKOUT_COMPLETED: _STARTS,
        WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED: frozenset({_ACTIVE}),
        WebhookEventKind.SUBSCRIPTION_UPDATED: frozenset({_ACTIVE, _CANCELED}),
        WebhookEventKind.SUBSCRIPTION_DELETED: frozenset({_CANCELED}),
    },
    _CANCELED: {
        WebhookEventKind.CHECKOUT_COMPLETED: _STARTS,
    },
}

# Processor subscription status -> local state
PROCESSOR_STATUS_MAP: Dict[str, str] = {
    "trialing": _TRIALING,
    "active": _ACTIVE,
    "past_due": _PAST_DUE,
    "unpaid": _PAST_DUE,
    "canceled": _CANCELED,
    "incomplete_expired": _CANCELED,
}


def allowed_targets(current_state: str, kind: WebhookEventKind) -> FrozenSet[str]:
    return TRANSITIONS.get(current_state, {}).get(kind, frozenset())


def evaluate_transition(
    current_state: str,
    kind: WebhookEventKind,
    target_state: Optional[str],
) -> TransitionOutcome:
    """
    Classify a proposed transition.

    A missing target or a target equal to the current state is a no-op, so
    redelivered events converge on the same end state.
    """
    if target_state is None or target_state == current_state:
        return TransitionOutcome.NOOP
    if target_state in allowed_targets(current_state, kind):
        return TransitionOutcome.APPLY
    return TransitionOutcome.ILLEGAL


def map_processor_status(status: Optional[str]) -> Optional[str]:
    """Local state for a processor status; None for statuses we do not track."""
    if not status:
        return None
    return PROCESSOR_STATUS_MAP.get(status.lower())


def derive_subscription_active(state: str, is_whitelisted: bool) -> bool:
    return bool(is_whitelisted) or state in ENTITLED_STATES
