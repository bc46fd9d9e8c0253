"""
Analytics API routes: read-only queries over the usage ledger.

SECURITY: Revenue figures require the admin token.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from billing_engine.api.dependencies import require_admin_token
from billing_engine.database.session import get_db_session
from billing_engine.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/analytics",
    tags=["analytics"],
    dependencies=[Depends(require_admin_token)],
)


class SummaryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_revenue: float = Field(..., alias="totalRevenue")
    active_subscribers: int = Field(..., alias="activeSubscribers")
    trialing_subscribers: int = Field(..., alias="trialingSubscribers")
    past_due_subscribers: int = Field(..., alias="pastDueSubscribers")
    whitelisted_accounts: int = Field(..., alias="whitelistedAccounts")
    total_redemptions: int = Field(..., alias="totalRedemptions")
    average_discount: float = Field(..., alias="averageDiscount")


class RevenueResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_revenue: float = Field(..., alias="totalRevenue")
    since: Optional[datetime] = None
    until: Optional[datetime] = None


class CouponStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    redemptions: int
    total_discount: float = Field(..., alias="totalDiscount")
    current_uses: int = Field(..., alias="currentUses")
    max_uses: Optional[int] = Field(None, alias="maxUses")


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(db_session: Session = Depends(get_db_session)):
    summary = UsageLedger(db_session).summary()
    return SummaryResponse(
        total_revenue=float(summary.total_revenue),
        active_subscribers=summary.active_subscribers,
        trialing_subscribers=summary.trialing_subscribers,
        past_due_subscribers=summary.past_due_subscribers,
        whitelisted_accounts=summary.whitelisted_accounts,
        total_redemptions=summary.total_redemptions,
        average_discount=float(summary.average_discount),
    )


@router.get("/revenue", response_model=RevenueResponse)
async def get_revenue(
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    db_session: Session = Depends(get_db_session),
):
    """Net revenue in [since, until)."""
    total = UsageLedger(db_session).total_revenue(since=since, until=until)
    return RevenueResponse(total_revenue=float(total), since=since, until=until)


@router.get("/coupons", response_model=List[CouponStatsResponse])
async def get_coupon_stats(
    limit: Optional[int] = Query(None, ge=1, le=500),
    db_session: Session = Depends(get_db_session),
):
    """Per-coupon redemptions, most used first."""
    return [
        CouponStatsResponse(
            code=stats.code,
            redemptions=stats.redemptions,
            total_discount=float(stats.total_discount),
            current_uses=stats.current_uses,
            max_uses=stats.max_uses,
        )
        for stats in UsageLedger(db_session).coupon_stats(limit=limit)
    ]
