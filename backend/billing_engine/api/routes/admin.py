"""
Admin API routes for coupon, allow-list and ledger-correction management.

SECURITY: All routes require the X-Admin-Token header.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from billing_engine.api.dependencies import require_admin_token
from billing_engine.api.routes.analytics import CouponStatsResponse
from billing_engine.database.session import get_db_session
from billing_engine.models.coupon import Coupon, CouponUsage
from billing_engine.models.payment_record import PaymentRecord
from billing_engine.models.whitelist_entry import WhitelistEntry
from billing_engine.services.admin_service import AdminService
from billing_engine.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# Request/Response models

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateCouponRequest(CamelModel):
    """Request to create a coupon."""
    code: str = Field(..., min_length=1, max_length=50)
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    is_active: bool = Field(True, alias="isActive")
    discount_type: str = Field("percentage", alias="discountType")
    discount_value: float = Field(0, alias="discountValue", ge=0)
    bonus_trial_days: int = Field(0, alias="bonusTrialDays", ge=0)
    target_tier: Optional[str] = Field(None, alias="targetTier")
    valid_from: Optional[datetime] = Field(None, alias="validFrom")
    valid_until: Optional[datetime] = Field(None, alias="validUntil")
    max_uses: Optional[int] = Field(None, alias="maxUses", ge=0)
    max_uses_per_account: Optional[int] = Field(None, alias="maxUsesPerAccount", ge=0)
    first_time_only: bool = Field(False, alias="firstTimeOnly")
    allowed_emails: List[str] = Field(default_factory=list, alias="allowedEmails")
    allowed_domains: List[str] = Field(default_factory=list, alias="allowedDomains")

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        if not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError("Code must contain only letters, digits, underscores, or hyphens")
        return v.upper()


class UpdateCouponRequest(CamelModel):
    """Editable coupon fields. Usage counters and discount terms are not editable."""
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    is_active: Optional[bool] = Field(None, alias="isActive")
    bonus_trial_days: Optional[int] = Field(None, alias="bonusTrialDays", ge=0)
    valid_from: Optional[datetime] = Field(None, alias="validFrom")
    valid_until: Optional[datetime] = Field(None, alias="validUntil")
    max_uses: Optional[int] = Field(None, alias="maxUses", ge=0)
    max_uses_per_account: Optional[int] = Field(None, alias="maxUsesPerAccount", ge=0)
    first_time_only: Optional[bool] = Field(None, alias="firstTimeOnly")
    allowed_emails: Optional[List[str]] = Field(None, alias="allowedEmails")
    allowed_domains: Optional[List[str]] = Field(None, alias="allowedDomains")


class CouponResponse(CamelModel):
    id: str
    code: str
    name: Optional[str]
    is_active: bool = Field(..., alias="isActive")
    status: str
    discount_type: str = Field(..., alias="discountType")
    discount_value: float = Field(..., alias="discountValue")
    bonus_trial_days: int = Field(..., alias="bonusTrialDays")
    target_tier: Optional[str] = Field(None, alias="targetTier")
    valid_from: Optional[datetime] = Field(None, alias="validFrom")
    valid_until: Optional[datetime] = Field(None, alias="validUntil")
    max_uses: Optional[int] = Field(None, alias="maxUses")
    max_uses_per_account: Optional[int] = Field(None, alias="maxUsesPerAccount")
    first_time_only: bool = Field(..., alias="firstTimeOnly")
    allowed_emails: List[str] = Field(default_factory=list, alias="allowedEmails")
    allowed_domains: List[str] = Field(default_factory=list, alias="allowedDomains")
    current_uses: int = Field(..., alias="currentUses")
    remaining_uses: Optional[int] = Field(None, alias="remainingUses")


class WhitelistRequest(CamelModel):
    """Add or update an allow-list entry."""
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(None, max_length=255)
    role: Optional[str] = None
    access_level: Optional[str] = Field(None, alias="accessLevel")
    is_active: Optional[bool] = Field(None, alias="isActive")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")
    can_access_admin_panel: Optional[bool] = Field(None, alias="canAccessAdminPanel")
    can_create_coupons: Optional[bool] = Field(None, alias="canCreateCoupons")
    can_manage_whitelist: Optional[bool] = Field(None, alias="canManageWhitelist")
    can_bypass_limits: Optional[bool] = Field(None, alias="canBypassLimits")
    notes: Optional[str] = Field(None, max_length=2000)


class WhitelistResponse(CamelModel):
    email: str
    name: Optional[str]
    role: str
    access_level: str = Field(..., alias="accessLevel")
    is_active: bool = Field(..., alias="isActive")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")
    permissions: dict


class PaymentRecordResponse(CamelModel):
    id: str
    account_id: Optional[str] = Field(None, alias="accountId")
    external_event_id: str = Field(..., alias="externalEventId")
    external_invoice_id: Optional[str] = Field(None, alias="externalInvoiceId")
    amount: float
    currency: str
    status: str
    is_reversal: bool = Field(..., alias="isReversal")
    reverses_id: Optional[str] = Field(None, alias="reversesId")
    recorded_at: datetime = Field(..., alias="recordedAt")


class CouponUsageResponse(CamelModel):
    id: str
    account_id: str = Field(..., alias="accountId")
    email: str
    discount_applied: float = Field(..., alias="discountApplied")
    trial_days_granted: int = Field(..., alias="trialDaysGranted")
    external_session_id: Optional[str] = Field(None, alias="externalSessionId")
    is_reversal: bool = Field(..., alias="isReversal")
    reverses_id: Optional[str] = Field(None, alias="reversesId")
    used_at: datetime = Field(..., alias="usedAt")


def _coupon_response(coupon: Coupon) -> CouponResponse:
    return CouponResponse(
        id=coupon.id,
        code=coupon.code,
        name=coupon.name,
        is_active=coupon.is_active,
        status=coupon.status,
        discount_type=coupon.discount_type,
        discount_value=float(coupon.discount_value),
        bonus_trial_days=coupon.bonus_trial_days,
        target_tier=coupon.target_tier,
        valid_from=coupon.valid_from,
        valid_until=coupon.valid_until,
        max_uses=coupon.max_uses,
        max_uses_per_account=coupon.max_uses_per_account,
        first_time_only=coupon.first_time_only,
        allowed_emails=list(coupon.allowed_emails or []),
        allowed_domains=list(coupon.allowed_domains or []),
        current_uses=coupon.current_uses,
        remaining_uses=coupon.remaining_uses,
    )


def _whitelist_response(entry: WhitelistEntry) -> WhitelistResponse:
    return WhitelistResponse(
        email=entry.email,
        name=entry.name,
        role=entry.role,
        access_level=entry.access_level,
        is_active=entry.is_active,
        expires_at=entry.expires_at,
        permissions=entry.permissions,
    )


def _payment_response(record: PaymentRecord) -> PaymentRecordResponse:
    return PaymentRecordResponse(
        id=record.id,
        account_id=record.account_id,
        external_event_id=record.external_event_id,
        external_invoice_id=record.external_invoice_id,
        amount=float(record.amount),
        currency=record.currency,
        status=record.status,
        is_reversal=record.is_reversal,
        reverses_id=record.reverses_id,
        recorded_at=record.recorded_at,
    )


def _usage_response(usage: CouponUsage) -> CouponUsageResponse:
    return CouponUsageResponse(
        id=usage.id,
        account_id=usage.account_id,
        email=usage.email,
        discount_applied=float(usage.discount_applied),
        trial_days_granted=usage.trial_days_granted,
        external_session_id=usage.external_session_id,
        is_reversal=usage.is_reversal,
        reverses_id=usage.reverses_id,
        used_at=usage.used_at,
    )


def get_admin_service(db_session: Session = Depends(get_db_session)) -> AdminService:
    return AdminService(db_session)


# Coupons

@router.get("/coupons", response_model=List[CouponResponse])
async def list_coupons(
    active_only: bool = Query(False, alias="activeOnly"),
    _admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    return [_coupon_response(c) for c in service.list_coupons(active_only=active_only)]


@router.get("/coupons/{code}", response_model=CouponResponse)
async def get_coupon(
    code: str,
    _admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    return _coupon_response(service.get_coupon(code))


@router.post("/coupons", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    coupon_request: CreateCouponRequest,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    coupon = service.create_coupon(coupon_request.model_dump(), created_by=admin)
    return _coupon_response(coupon)


@router.patch("/coupons/{code}", response_model=CouponResponse)
async def update_coupon(
    code: str,
    update_request: UpdateCouponRequest,
    _admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    changes = update_request.model_dump(exclude_unset=True)
    return _coupon_response(service.update_coupon(code, changes))


# Allow-list

@router.get("/whitelist", response_model=List[WhitelistResponse])
async def list_whitelist(
    active_only: bool = Query(False, alias="activeOnly"),
    _admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    return [_whitelist_response(e) for e in service.list_whitelist(active_only=active_only)]


@router.put("/whitelist", response_model=WhitelistResponse)
async def upsert_whitelist_entry(
    whitelist_request: WhitelistRequest,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    fields = whitelist_request.model_dump(exclude_unset=True, exclude={"email"})
    entry = service.upsert_whitelist_entry(whitelist_request.email, fields, added_by=admin)
    return _whitelist_response(entry)


@router.delete("/whitelist/{email}", response_model=WhitelistResponse)
async def remove_whitelist_entry(
    email: str,
    _admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    """Deactivate an entry. Entries are never deleted."""
    return _whitelist_response(service.remove_whitelist_entry(email))


# Ledger corrections

@router.get("/accounts/{account_id}/payments", response_model=List[PaymentRecordResponse])
async def list_account_payments(
    account_id: str,
    _admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    return [_payment_response(p) for p in service.list_payments(account_id)]


@router.post(
    "/payments/{payment_id}/reversal",
    response_model=PaymentRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def reverse_payment(
    payment_id: str,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    """Append a reversal row; the original payment is never edited."""
    return _payment_response(service.reverse_payment(payment_id, reversed_by=admin))


@router.get("/coupons/{code}/usages", response_model=List[CouponUsageResponse])
async def list_coupon_usages(
    code: str,
    _admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    return [_usage_response(u) for u in service.list_coupon_usages(code)]


@router.post(
    "/coupon-usages/{usage_id}/reversal",
    response_model=CouponUsageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def reverse_coupon_usage(
    usage_id: str,
    admin: str = Depends(require_admin_token),
    service: AdminService = Depends(get_admin_service),
):
    return _usage_response(service.reverse_coupon_usage(usage_id, reversed_by=admin))


# Stats

@router.get("/stats", response_model=List[CouponStatsResponse])
async def get_coupon_usage_stats(
    _admin: str = Depends(require_admin_token),
    db_session: Session = Depends(get_db_session),
):
    """Per-coupon usage and discount totals."""
    return [
        CouponStatsResponse(
            code=stats.code,
            redemptions=stats.redemptions,
            total_discount=float(stats.total_discount),
            current_uses=stats.current_uses,
            max_uses=stats.max_uses,
        )
        for stats in UsageLedger(db_session).coupon_stats()
    ]
