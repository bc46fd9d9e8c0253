"""
Test helpers: an in-memory payment processor and Stripe event builders.
"""

import asyncio
import dataclasses
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from billing_engine.errors import PaymentProcessorError
from billing_engine.integrations.stripe.billing_client import (
    ProcessorCheckoutSession,
    ProcessorCustomer,
    ProcessorSubscription,
    StripeBillingClient,
)

WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessorClient:
    """
    In-memory payment processor.

    Every call yields to the event loop so concurrent checkouts interleave
    the way they would against the real processor.
    """

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self.customers: Dict[str, str] = {}
        self.customer_create_calls = 0
        self.coupons: Dict[str, str] = {}
        self.sessions: List[dict] = []
        self.subscriptions: Dict[str, ProcessorSubscription] = {}
        self.canceled: List[str] = []
        self.fail_session_creation = False
        self.fail_retrieve = False
        self._verifier = StripeBillingClient(api_key="sk_test_fake", webhook_secret=webhook_secret)

    async def get_or_create_customer(self, email, phone, account_id):
        await asyncio.sleep(0)
        if email in self.customers:
            return ProcessorCustomer(id=self.customers[email], email=email)
        await asyncio.sleep(0)
        self.customer_create_calls += 1
        self.customers[email] = f"cus_{len(self.customers) + 1}"
        return ProcessorCustomer(id=self.customers[email], email=email, created=True)

    async def create_coupon(self, coupon_id, code, discount_type, discount_value, currency="usd"):
        await asyncio.sleep(0)
        return self.coupons.setdefault(coupon_id, f"stripe_coupon_{code}")

    async def create_checkout_session(
        self,
        customer_id,
        price_id,
        metadata,
        trial_days,
        success_url,
        cancel_url,
        external_coupon_id=None,
    ):
        await asyncio.sleep(0)
        if self.fail_session_creation:
            raise PaymentProcessorError("Card processor unavailable", status_code=503, retryable=True)
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({
            "id": session_id,
            "customer_id": customer_id,
            "price_id": price_id,
            "metadata": dict(metadata),
            "trial_days": trial_days,
            "external_coupon_id": external_coupon_id,
        })
        return ProcessorCheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def retrieve_subscription(self, subscription_id):
        await asyncio.sleep(0)
        if self.fail_retrieve:
            raise PaymentProcessorError("Processor unavailable", status_code=503, retryable=True)
        return self.subscriptions[subscription_id]

    async def schedule_cancellation(self, subscription_id):
        await asyncio.sleep(0)
        self.canceled.append(subscription_id)
        subscription = dataclasses.replace(self.subscriptions[subscription_id], cancel_at_period_end=True)
        self.subscriptions[subscription_id] = subscription
        return subscription

    def verify_webhook(self, payload, signature_header):
        return self._verifier.verify_webhook(payload, signature_header)


def sign_webhook(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, data_object: dict, event_id: Optional[str] = None) -> dict:
    """A Stripe event envelope."""
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": data_object},
    }


def subscription_object(
    subscription_id: str,
    status: str,
    account_id: Optional[str] = None,
    customer_id: Optional[str] = "cus_1",
    **fields,
) -> dict:
    """A Stripe subscription object as delivered in webhooks."""
    now = int(datetime.now(timezone.utc).timestamp())
    data = {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer_id,
        "current_period_start": now,
        "current_period_end": now + 30 * 86400,
        "trial_end": None,
        "cancel_at_period_end": False,
        "metadata": {"account_id": account_id} if account_id else {},
    }
    data.update(fields)
    return data


def checkout_completed_object(
    account_id: str,
    subscription_id: str,
    tier: str = "pro",
    trial_days: int = 7,
    customer_id: Optional[str] = "cus_1",
) -> dict:
    return {
        "id": f"cs_{uuid.uuid4().hex[:12]}",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer_id,
        "subscription": subscription_id,
        "client_reference_id": account_id,
        "metadata": {
            "account_id": account_id,
            "tier": tier,
            "coupon_code": "",
            "trial_days": str(trial_days),
        },
    }


def invoice_object(
    subscription_id: str,
    amount_cents: int = 349,
    customer_id: Optional[str] = "cus_1",
) -> dict:
    return {
        "id": f"in_{uuid.uuid4().hex[:12]}",
        "object": "invoice",
        "customer": customer_id,
        "subscription": subscription_id,
        "amount_paid": amount_cents,
        "amount_due": amount_cents,
        "currency": "usd",
    }


def signed_body(event: dict, secret: str = WEBHOOK_SECRET) -> Tuple[bytes, str]:
    """Raw body and matching signature header for an event."""
    payload = json.dumps(event)
    return payload.encode("utf-8"), sign_webhook(payload, secret)
