"""Stripe payment processor integration."""

from billing_engine.integrations.stripe.billing_client import (
    StripeBillingClient,
    RetryConfig,
    ProcessorCustomer,
    ProcessorCheckoutSession,
    ProcessorSubscription,
    get_billing_client,
)

__all__ = [
    "StripeBillingClient",
    "RetryConfig",
    "ProcessorCustomer",
    "ProcessorCheckoutSession",
    "ProcessorSubscription",
    "get_billing_client",
]
