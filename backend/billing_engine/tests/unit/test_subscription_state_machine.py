"""
Tests for the subscription transition table.

Test classes:
- TestEvaluateTransition: apply / noop / illegal classification
- TestProcessorStatusMap: processor status to local state
- TestDerivedActiveFlag: subscription_active derivation
- TestModuleSource: the module compiles cleanly
"""

import warnings
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from billing_engine.models.account import SubscriptionState
from billing_engine.services import subscription_state_machine
from billing_engine.services.subscription_state_machine import (
    TRANSITIONS,
    TransitionOutcome,
    WebhookEventKind,
    allowed_targets,
    derive_subscription_active,
    evaluate_transition,
    map_processor_status,
)

STATES = [s.value for s in SubscriptionState]


class TestEvaluateTransition:

    @pytest.mark.parametrize("current,kind,target", [
        ("none", WebhookEventKind.CHECKOUT_COMPLETED, "trialing"),
        ("none", WebhookEventKind.CHECKOUT_COMPLETED, "active"),
        ("trialing", WebhookEventKind.SUBSCRIPTION_UPDATED, "active"),
        ("active", WebhookEventKind.INVOICE_PAYMENT_FAILED, "past_due"),
        ("past_due", WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED, "active"),
        ("past_due", WebhookEventKind.SUBSCRIPTION_DELETED, "canceled"),
        ("canceled", WebhookEventKind.CHECKOUT_COMPLETED, "trialing"),
    ])
    def test_allowed_transitions_apply(self, current, kind, target):
        assert evaluate_transition(current, kind, target) is TransitionOutcome.APPLY

    @pytest.mark.parametrize("current,kind,target", [
        ("canceled", WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED, "active"),
        ("canceled", WebhookEventKind.SUBSCRIPTION_UPDATED, "active"),
        ("none", WebhookEventKind.INVOICE_PAYMENT_FAILED, "past_due"),
        ("active", WebhookEventKind.SUBSCRIPTION_UPDATED, "trialing"),
        ("trialing", WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED, "active"),
    ])
    def test_transitions_outside_the_table_are_illegal(self, current, kind, target):
        assert evaluate_transition(current, kind, target) is TransitionOutcome.ILLEGAL

    def test_same_state_is_noop(self):
        assert evaluate_transition("active", WebhookEventKind.SUBSCRIPTION_UPDATED, "active") is TransitionOutcome.NOOP

    def test_missing_target_is_noop(self):
        assert evaluate_transition("active", WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED, None) is TransitionOutcome.NOOP

    def test_canceled_only_leaves_through_checkout(self):
        assert set(TRANSITIONS["canceled"]) == {WebhookEventKind.CHECKOUT_COMPLETED}

    def test_every_state_can_be_canceled_by_deletion_except_terminal(self):
        for state in ("none", "trialing", "active", "past_due"):
            assert "canceled" in allowed_targets(state, WebhookEventKind.SUBSCRIPTION_DELETED)

    @given(
        current=st.sampled_from(STATES),
        kind=st.sampled_from(list(WebhookEventKind)),
        target=st.sampled_from(STATES),
    )
    def test_classification_matches_table(self, current, kind, target):
        outcome = evaluate_transition(current, kind, target)
        if target == current:
            assert outcome is TransitionOutcome.NOOP
        elif target in TRANSITIONS.get(current, {}).get(kind, frozenset()):
            assert outcome is TransitionOutcome.APPLY
        else:
            assert outcome is TransitionOutcome.ILLEGAL


class TestProcessorStatusMap:

    @pytest.mark.parametrize("status,expected", [
        ("trialing", "trialing"),
        ("active", "active"),
        ("past_due", "past_due"),
        ("unpaid", "past_due"),
        ("canceled", "canceled"),
        ("incomplete_expired", "canceled"),
        ("ACTIVE", "active"),
    ])
    def test_known_statuses(self, status, expected):
        assert map_processor_status(status) == expected

    @pytest.mark.parametrize("status", ["incomplete", "paused", "", None])
    def test_untracked_statuses_map_to_none(self, status):
        assert map_processor_status(status) is None


class TestDerivedActiveFlag:

    @pytest.mark.parametrize("state,expected", [
        ("none", False),
        ("trialing", True),
        ("active", True),
        ("past_due", True),
        ("canceled", False),
    ])
    def test_state_alone(self, state, expected):
        assert derive_subscription_active(state, is_whitelisted=False) is expected

    def test_whitelist_always_active(self):
        assert derive_subscription_active("canceled", is_whitelisted=True) is True

    def test_event_kind_from_unknown_type(self):
        assert WebhookEventKind.from_event_type("charge.refunded") is None
        assert WebhookEventKind.from_event_type("invoice.payment_failed") is WebhookEventKind.INVOICE_PAYMENT_FAILED


class TestModuleSource:

    def test_compiles_without_escape_warnings(self):
        path = Path(subscription_state_machine.__file__)

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(path.read_text(), str(path), "exec")

    def test_docstring_keeps_diagram(self):
        assert "\\" in subscription_state_machine.__doc__
