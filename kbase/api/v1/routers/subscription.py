"""
Subscription API Router.

Endpoints:
    POST /subscription/checkout-session  - Start a provider checkout for a price lookup key
    POST /subscription/portal-session    - Open the provider billing portal
    GET  /subscription/usage             - Available tiers and the active usage meter
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.api.v1.schemas import (
    CheckoutSessionRequest,
    SessionUrlResponse,
    UsageMeterResponse,
    UsageResponse,
)
from kbase.core.billing.plans import FREE_PLAN
from kbase.core.billing.subscription_service import subscription_service
from kbase.core.database.base import get_db
from kbase.core.database.models import User
from kbase.dependencies import get_current_user

router = APIRouter(prefix="/subscription", tags=["Subscription"])

logger = logging.getLogger("kbase.api.subscription")


@router.post("/checkout-session", response_model=SessionUrlResponse)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    checkout = await subscription_service.create_checkout_session(session, user, request.lookup_key)
    return SessionUrlResponse(session_id=checkout.get("id"), url=checkout.get("url"))


@router.post("/portal-session", response_model=SessionUrlResponse)
async def create_portal_session(user: User = Depends(get_current_user)):
    portal = await subscription_service.create_portal_session(user)
    return SessionUrlResponse(session_id=portal.get("id"), url=portal.get("url"))


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    tiers = await subscription_service.check_available_tiers(session, user)
    meter = await subscription_service.get_active_meter(session, user)
    sub = await subscription_service.get_active_subscription(session, user)
    return UsageResponse(
        available_tiers=tiers,
        plan_type=sub.plan_type if sub else FREE_PLAN,
        meter=UsageMeterResponse.from_model(meter) if meter else None,
    )
