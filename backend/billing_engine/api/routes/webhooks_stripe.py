"""
Stripe webhook route.

SECURITY: The signature is verified against the raw body before anything
in the payload is read.

Responses:
- 200 after the event was applied, acknowledged as a duplicate, or
  acknowledged without change (unknown account, stale, illegal transition)
- 400 on signature failure (Stripe's own retry is the only resend path)
- 409 / 503 when a concurrent update or a store failure rolled the event
  back, so Stripe redelivers it
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from billing_engine.api.dependencies import get_processor_client
from billing_engine.database.session import get_db_session
from billing_engine.integrations.stripe.billing_client import StripeBillingClient
from billing_engine.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/stripe", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    model_config = ConfigDict(populate_by_name=True)

    received: bool = True
    message: str = "Webhook processed"
    event_id: Optional[str] = Field(None, alias="eventId")
    outcome: Optional[str] = None


@router.post("", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db_session: Session = Depends(get_db_session),
    client: StripeBillingClient = Depends(get_processor_client),
):
    """Receive one Stripe event delivery."""
    body = await request.body()
    handler = BillingWebhookHandler(db_session, client)
    result = await handler.process(body, stripe_signature)

    return WebhookResponse(
        received=True,
        message=result.message,
        event_id=result.event_id,
        outcome=result.outcome or result.skipped_reason,
    )
