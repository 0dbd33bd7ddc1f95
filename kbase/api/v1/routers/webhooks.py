# kbase/api/v1/routers/webhooks.py
"""
Webhooks API router.

Receives payments-provider (Stripe) events. When STRIPE_WEBHOOK_SECRET is set
every request must carry a valid ``Stripe-Signature`` header; without it,
unsigned events are accepted only in debug mode. Events that
reference unknown or mismatched records are logged and acknowledged with 200,
since nothing on the provider side can act on an error.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.config import settings
from kbase.core.billing.stripe_client import WebhookSignatureError, construct_event
from kbase.core.billing.subscription_service import subscription_service
from kbase.core.database.base import get_db

logger = logging.getLogger("kbase.api.webhooks")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_db),
):
    payload = await request.body()

    if settings.stripe_webhook_secret:
        try:
            event = construct_event(payload, stripe_signature, settings.stripe_webhook_secret)
        except WebhookSignatureError as e:
            logger.warning(f"Rejected webhook: {e}")
            raise HTTPException(status_code=400, detail="Invalid webhook signature")
    else:
        if not settings.debug:
            logger.error("STRIPE_WEBHOOK_SECRET not set, rejecting webhook")
            raise HTTPException(status_code=503, detail="Webhook verification not configured")
        logger.warning("STRIPE_WEBHOOK_SECRET not set, accepting unverified webhook in debug mode")
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid webhook payload")
        if not isinstance(event, dict) or "type" not in event:
            raise HTTPException(status_code=400, detail="Invalid webhook payload")

    logger.info(f"Received webhook {event.get('type')} ({event.get('id')})")
    await subscription_service.handle_event(session, event)
    return {"received": True}
