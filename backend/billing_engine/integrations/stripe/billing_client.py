"""
Stripe client for customers, checkout sessions and subscriptions.

The stripe library is synchronous; every call runs in a worker thread under
a bounded timeout. Reads are retried with exponential backoff; creation
calls are never retried here and rely on idempotency keys instead.

Documentation: https://docs.stripe.com/api
"""

import asyncio
import functools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Dict, Optional

import stripe

from billing_engine.config.settings import BillingSettings, get_settings
from billing_engine.errors import AuthenticityError, PaymentProcessorError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Backoff policy for idempotent processor reads."""
    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            attempt: Current attempt number (0-indexed)
        """
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)


@dataclass
class ProcessorCustomer:
    """A Stripe customer."""
    id: str
    email: Optional[str] = None
    created: bool = False


@dataclass
class ProcessorCheckoutSession:
    """A Stripe Checkout session."""
    id: str
    url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class ProcessorSubscription:
    """The subset of a Stripe subscription the reconciler consumes."""
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


def as_dict(obj: Any) -> Dict[str, Any]:
    """Convert a StripeObject (or plain dict) to a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return json.loads(str(obj))


def from_timestamp(value: Any) -> Optional[datetime]:
    """Stripe epoch seconds to aware UTC datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def subscription_from_payload(data: Dict[str, Any]) -> ProcessorSubscription:
    """
    Build a ProcessorSubscription from a subscription object.

    Newer API versions report billing periods on the subscription items
    instead of the subscription itself; both shapes are accepted.
    """
    period_start = data.get("current_period_start")
    period_end = data.get("current_period_end")
    if period_start is None or period_end is None:
        items = (data.get("items") or {}).get("data") or []
        if items:
            period_start = period_start or items[0].get("current_period_start")
            period_end = period_end or items[0].get("current_period_end")

    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return ProcessorSubscription(
        id=data.get("id"),
        status=data.get("status") or "",
        customer_id=customer,
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        trial_end=from_timestamp(data.get("trial_end")),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        metadata=dict(data.get("metadata") or {}),
    )


class StripeBillingClient:
    """
    Client for Stripe billing operations.

    Handles:
    - Customer lookup and idempotent creation
    - Subscription-mode checkout sessions with trial and discount
    - Processor-side coupons for checkout discounts
    - Subscription reads and scheduled cancellation
    - Webhook signature verification
    """

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        webhook_tolerance_seconds: int = 300,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self.retry_config = retry_config or RetryConfig()
        self.webhook_tolerance_seconds = webhook_tolerance_seconds

    def _configure(self) -> None:
        if not self.api_key:
            raise PaymentProcessorError("Payment processor is not configured", retryable=False)
        stripe.api_key = self.api_key

    def _map_error(self, error: stripe.StripeError, operation: str) -> PaymentProcessorError:
        status_code = getattr(error, "http_status", None)
        retryable = isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError)) or (
            status_code is not None and status_code >= 500
        )
        message = getattr(error, "user_message", None) or str(error) or "Payment processor error"
        return PaymentProcessorError(
            message,
            status_code=status_code,
            retryable=retryable,
            operation=operation,
        )

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args,
        idempotent: bool = False,
        **kwargs,
    ) -> Any:
        """
        Run a stripe call in a thread with a timeout.

        Args:
            operation: Name used in logs and errors
            fn: stripe API function
            idempotent: Retry retryable failures with backoff (reads only)

        Raises:
            PaymentProcessorError: After the final attempt fails
        """
        self._configure()
        max_attempts = (self.retry_config.max_retries + 1) if idempotent else 1
        attempt = 0

        while True:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(functools.partial(fn, *args, **kwargs)),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = PaymentProcessorError(
                    f"Payment processor timed out during {operation}",
                    retryable=True,
                    operation=operation,
                )
            except stripe.StripeError as e:
                error = self._map_error(e, operation)

            attempt += 1
            if not error.retryable or attempt >= max_attempts:
                logger.error("Payment processor call failed", extra={
                    "operation": operation,
                    "attempts": attempt,
                    "status_code": error.status_code,
                    "error": error.message,
                })
                raise error

            delay = self.retry_config.delay_for(attempt - 1)
            logger.info("Retrying payment processor call", extra={
                "operation": operation,
                "attempt": attempt,
                "delay_seconds": delay,
            })
            await asyncio.sleep(delay)

    # =========================================================================
    # Customers
    # =========================================================================

    async def find_customer_by_email(self, email: str) -> Optional[ProcessorCustomer]:
        result = await self._call(
            "customer.list", stripe.Customer.list, email=email, limit=1, idempotent=True
        )
        customers = as_dict(result).get("data") or []
        if not customers:
            return None
        return ProcessorCustomer(id=customers[0]["id"], email=customers[0].get("email"))

    async def create_customer(
        self,
        email: str,
        phone: Optional[str],
        account_id: str,
    ) -> ProcessorCustomer:
        """
        Create a customer.

        The idempotency key is derived from the email, so concurrent or
        repeated creations for the same email return the same customer.
        """
        params = {"email": email, "metadata": {"account_id": account_id}}
        if phone:
            params["phone"] = phone
        customer = as_dict(await self._call(
            "customer.create",
            stripe.Customer.create,
            idempotency_key=f"customer-create-{email}",
            **params,
        ))
        logger.info("Stripe customer created", extra={
            "account_id": account_id,
            "customer_id": customer["id"],
        })
        return ProcessorCustomer(id=customer["id"], email=email, created=True)

    async def get_or_create_customer(
        self,
        email: str,
        phone: Optional[str],
        account_id: str,
    ) -> ProcessorCustomer:
        """Look up by email before creating."""
        existing = await self.find_customer_by_email(email)
        if existing:
            return existing
        return await self.create_customer(email, phone, account_id)

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_coupon(
        self,
        coupon_id: str,
        code: str,
        discount_type: str,
        discount_value: Decimal,
        currency: str = "usd",
    ) -> str:
        """Create a one-period processor coupon mirroring a local coupon."""
        params: Dict[str, Any] = {"name": code, "duration": "once", "metadata": {"coupon_code": code}}
        if discount_type == "percentage":
            params["percent_off"] = float(discount_value)
        else:
            params["amount_off"] = int((Decimal(discount_value) * 100).to_integral_value())
            params["currency"] = currency
        coupon = as_dict(await self._call(
            "coupon.create",
            stripe.Coupon.create,
            idempotency_key=f"coupon-create-{coupon_id}",
            **params,
        ))
        return coupon["id"]

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        trial_days: int,
        success_url: str,
        cancel_url: str,
        external_coupon_id: Optional[str] = None,
    ) -> ProcessorCheckoutSession:
        """
        Create a subscription-mode checkout session.

        Metadata is copied onto the subscription so that later subscription
        and invoice events can be matched back to the account.
        """
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "subscription_data": subscription_data,
            "metadata": metadata,
            "client_reference_id": metadata.get("account_id"),
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if external_coupon_id:
            params["discounts"] = [{"coupon": external_coupon_id}]

        session = as_dict(await self._call(
            "checkout.session.create", stripe.checkout.Session.create, **params
        ))
        return ProcessorCheckoutSession(
            id=session["id"],
            url=session.get("url"),
            expires_at=from_timestamp(session.get("expires_at")),
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        result = await self._call(
            "subscription.retrieve",
            stripe.Subscription.retrieve,
            subscription_id,
            idempotent=True,
        )
        return subscription_from_payload(as_dict(result))

    async def schedule_cancellation(self, subscription_id: str) -> ProcessorSubscription:
        """Cancel at the end of the current period."""
        result = await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
        return subscription_from_payload(as_dict(result))

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook signature and decode the event.

        Args:
            payload: Raw request body, exactly as received
            signature_header: Stripe-Signature header value

        Returns:
            Decoded event as a plain dict

        Raises:
            AuthenticityError: Missing secret, bad signature, stale timestamp or bad JSON
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise AuthenticityError("Webhook secret not configured")
        if not signature_header:
            raise AuthenticityError("Missing webhook signature")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise AuthenticityError("Webhook payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                self.webhook_secret,
                self.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed", extra={"error": str(e)})
            raise AuthenticityError("Invalid webhook signature")

        try:
            event = json.loads(body)
        except ValueError:
            raise AuthenticityError("Webhook payload is not valid JSON")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise AuthenticityError("Webhook payload is not an event")
        return event


_client: Optional[StripeBillingClient] = None
_client_lock = Lock()


def get_billing_client(settings: Optional[BillingSettings] = None) -> StripeBillingClient:
    """
    Get or create the process-wide Stripe client.

    Args:
        settings: Settings to build from; defaults to get_settings()
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                settings = settings or get_settings()
                _client = StripeBillingClient(
                    api_key=settings.stripe_secret_key,
                    webhook_secret=settings.stripe_webhook_secret,
                    timeout_seconds=settings.processor_timeout_seconds,
                    retry_config=RetryConfig(
                        max_retries=settings.processor_max_retries,
                        initial_delay=settings.processor_retry_base_delay,
                        max_delay=settings.processor_retry_max_delay,
                    ),
                    webhook_tolerance_seconds=settings.webhook_tolerance_seconds,
                )
    return _client


def reset_billing_client() -> None:
    """Drop the cached client (tests)."""
    global _client
    with _client_lock:
        _client = None
