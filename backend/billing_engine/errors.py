"""
Structured error classes for the entitlement and billing engine.

Every error carries a stable machine-readable kind so clients can render a
specific message. Services raise these; the API layer renders them via
billing_engine.api.error_handlers.
"""

from enum import Enum
from typing import Optional

from fastapi import status


class BillingError(Exception):
    """Base exception for entitlement and billing errors."""

    kind = "BillingError"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str, reason: Optional[str] = None):
        self.message = message
        self.reason = reason
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        body = {
            "success": False,
            "errorKind": self.kind,
            "errorMessage": self.message,
            "retryable": self.retryable,
        }
        if self.reason:
            body["reason"] = self.reason
        return body


# =============================================================================
# Validation
# =============================================================================

class CouponRejection(str, Enum):
    """Reasons a coupon is rejected, in evaluation order."""
    CODE_NOT_FOUND = "CodeNotFound"
    EXPIRED = "Expired"
    EXHAUSTED = "Exhausted"
    INACTIVE = "Inactive"
    EMAIL_NOT_ELIGIBLE = "EmailNotEligible"
    DOMAIN_NOT_ELIGIBLE = "DomainNotEligible"
    PER_ACCOUNT_LIMIT_REACHED = "PerAccountLimitReached"
    NOT_FIRST_TIME = "NotFirstTime"
    TIER_NOT_APPLICABLE = "TierNotApplicable"


REJECTION_MESSAGES = {
    CouponRejection.CODE_NOT_FOUND: "Invalid coupon code",
    CouponRejection.EXPIRED: "Coupon has expired",
    CouponRejection.EXHAUSTED: "Coupon usage limit reached",
    CouponRejection.INACTIVE: "Coupon is not active",
    CouponRejection.EMAIL_NOT_ELIGIBLE: "This coupon is not available for your email",
    CouponRejection.DOMAIN_NOT_ELIGIBLE: "This coupon is restricted to specific domains",
    CouponRejection.PER_ACCOUNT_LIMIT_REACHED: "You have already used this coupon",
    CouponRejection.NOT_FIRST_TIME: "This coupon is only for first-time subscribers",
    CouponRejection.TIER_NOT_APPLICABLE: "This coupon does not apply to the selected plan",
}


class ValidationError(BillingError):
    """Request or coupon is ineligible. Surfaced verbatim to the client."""

    kind = "ValidationError"
    http_status = status.HTTP_400_BAD_REQUEST


class CouponValidationError(ValidationError):
    """Coupon failed one of the eligibility checks."""

    def __init__(self, rejection: CouponRejection, message: Optional[str] = None):
        self.rejection = rejection
        super().__init__(message or REJECTION_MESSAGES[rejection], reason=rejection.value)


class InvalidTierError(ValidationError):
    """Requested tier is unknown or not a paid tier."""

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Invalid subscription tier: {tier}", reason="InvalidTier")


# =============================================================================
# Authenticity
# =============================================================================

class AuthenticityError(BillingError):
    """Webhook signature or payload could not be verified. Never retried by us."""

    kind = "AuthenticityError"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, reason="InvalidSignature")


# =============================================================================
# Conflicts
# =============================================================================

class ConflictError(BillingError):
    """A concurrent writer won a race on a counter, limit, or state."""

    kind = "ConflictError"
    http_status = status.HTTP_409_CONFLICT


class CouponExhaustedError(ConflictError):
    """Coupon passed validation but its usage limit was reached at commit."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(
            f"Coupon {code} was exhausted while checking out; retry without the coupon",
            reason="CouponExhausted",
        )


class StaleStateError(ConflictError):
    """Account state changed between read and compare-and-set."""

    retryable = True

    def __init__(self, account_id: str, expected_state: str):
        self.account_id = account_id
        self.expected_state = expected_state
        super().__init__(
            f"Account {account_id} is no longer in state {expected_state}",
            reason="StaleState",
        )


# =============================================================================
# Upstream
# =============================================================================

class UpstreamError(BillingError):
    """Payment processor failure."""

    kind = "UpstreamError"
    http_status = status.HTTP_502_BAD_GATEWAY
    retryable = True


class PaymentProcessorError(UpstreamError):
    """
    Error calling the payment processor.

    Attributes:
        status_code: Processor HTTP status, when one was received
        retryable: Whether the same call may be retried
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        operation: Optional[str] = None,
    ):
        self.status_code = status_code
        self.retryable = retryable
        self.operation = operation
        super().__init__(message, reason="ProcessorError")


class CheckoutFailedError(UpstreamError):
    """Checkout session could not be created. No partial state was committed."""

    def __init__(self, message: str):
        super().__init__(message, reason="CheckoutFailed")


# =============================================================================
# Lookup and store
# =============================================================================

class NotFoundError(BillingError):
    """Unknown coupon, account, or allow-list entry."""

    kind = "NotFoundError"
    http_status = status.HTTP_404_NOT_FOUND


class StoreUnavailableError(BillingError):
    """Database failure. The caller may retry."""

    kind = "StoreUnavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


# =============================================================================
# Entitlement
# =============================================================================

class EntitlementDeniedError(BillingError):
    """
    Raised when a feature entitlement check fails.

    Includes machine-readable reason codes for programmatic handling.
    """

    kind = "EntitlementDenied"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        feature: str,
        subscription_state: str,
        tier: str,
        required_tier: Optional[str] = None,
    ):
        self.feature = feature
        self.subscription_state = subscription_state
        self.tier = tier
        self.required_tier = required_tier
        super().__init__(
            f"Feature '{feature}' is not available on the current plan",
            reason=self._get_reason_code(),
        )

    def _get_reason_code(self) -> str:
        """Get machine-readable reason code."""
        if self.subscription_state == "canceled":
            return "subscription_canceled"
        elif self.subscription_state == "past_due":
            return "payment_past_due"
        elif self.required_tier:
            return "plan_upgrade_required"
        else:
            return "feature_not_entitled"

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["feature"] = self.feature
        body["subscriptionState"] = self.subscription_state
        body["requiredTier"] = self.required_tier
        return body
