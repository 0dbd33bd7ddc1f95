# ============================================================================
# kbase/core/billing/subscription_service.py
# ============================================================================
"""
Subscription Service - plans, usage meters and token usage accounting.

Usage meters:
    A meter holds per-tier token quotas and counters for the half-open window
    ``[start_at, end_at)``. A user has at most one active meter at a time.
    ``check_available_tiers`` lazily creates one when none is active, resuming
    from the latest meter's ``end_at`` (or the start of the current UTC day)
    with free-plan quotas.

Usage reports:
    ``report_usage`` inserts a TokenUsage line item and increments the used
    counter of the meter whose window contains the usage timestamp with a
    single ``UPDATE ... SET used = used + n``. Both statements run in the
    caller's transaction.

Subscriptions:
    Driven by payments-provider webhooks (see ``handle_event``). Mismatched or
    unknown references are logged and dropped; webhook handlers never raise for
    them.

Usage:
    from kbase.core.billing.subscription_service import subscription_service

    async with database_service.get_session() as session:
        tiers = await subscription_service.check_available_tiers(session, user)
        await subscription_service.report_usage(session, report)
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.core.database.models import (
    CheckoutSession,
    Subscription,
    SubscriptionUsageQuota,
    TokenUsage,
    UsageMeter,
    User,
)
from kbase.core.exceptions import ResourceValidationError
from kbase.core.utils.ids import gen_usage_meter_id
from kbase.core.utils.time_utils import add_one_month, start_of_day, to_naive_utc, utcnow

from .plans import ACTIVE_STATUS, FREE_PLAN, TIERS, parse_lookup_key
from .schemas import TokenUsageReport
from .stripe_client import StripeClient, stripe_client

logger = logging.getLogger("kbase.billing")


class SubscriptionService:
    """Subscription lifecycle and usage metering."""

    def __init__(self, stripe: Optional[StripeClient] = None):
        self.stripe = stripe or stripe_client

    # =========================================================================
    # CHECKOUT / PORTAL
    # =========================================================================

    async def create_checkout_session(self, session: AsyncSession, user: User, lookup_key: str) -> Dict[str, Any]:
        """
        Start a provider checkout for the price registered under ``lookup_key``.

        Raises:
            ResourceValidationError: Unknown lookup key
        """
        try:
            parse_lookup_key(lookup_key)
        except ValueError as e:
            raise ResourceValidationError(str(e)) from e

        prices = await self.stripe.list_prices(lookup_key)
        if not prices:
            raise ResourceValidationError(f"No price found for lookup key: {lookup_key}")

        checkout = await self.stripe.create_checkout_session(
            price_id=prices[0]["id"],
            client_reference_id=user.uid,
            customer_email=user.email,
            customer_id=user.customer_id,
        )
        session.add(
            CheckoutSession(
                session_id=checkout["id"],
                uid=user.uid,
                lookup_key=lookup_key,
            )
        )
        await session.flush()
        return checkout

    async def create_portal_session(self, user: User) -> Dict[str, Any]:
        if not user.customer_id:
            raise ResourceValidationError("User has no billing account yet")
        return await self.stripe.create_portal_session(user.customer_id)

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def get_subscription(self, session: AsyncSession, subscription_id: str) -> Optional[Subscription]:
        result = await session.execute(
            select(Subscription).where(Subscription.subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_active_subscription(self, session: AsyncSession, user: User) -> Optional[Subscription]:
        if not user.subscription_id:
            return None
        sub = await self.get_subscription(session, user.subscription_id)
        if sub is None or sub.status != ACTIVE_STATUS:
            return None
        return sub

    async def create_subscription(
        self,
        session: AsyncSession,
        user: User,
        subscription_id: str,
        lookup_key: str,
        plan_type: str,
        interval: str,
        status: str,
    ) -> Subscription:
        """
        Record a new subscription and give the user a meter for it.

        Returns the existing record when the user already has an active
        subscription, or when this provider id was recorded before.
        """
        active = await self.get_active_subscription(session, user)
        if active is not None:
            logger.warning(f"User {user.uid} already has active subscription {active.subscription_id}")
            return active

        existing = await self.get_subscription(session, subscription_id)
        if existing is not None:
            logger.info(f"Subscription {subscription_id} already recorded")
            return existing

        sub = Subscription(
            subscription_id=subscription_id,
            user_id=user.id,
            lookup_key=lookup_key,
            plan_type=plan_type,
            interval=interval,
            status=status,
        )
        session.add(sub)
        user.subscription_id = subscription_id
        await session.flush()

        # The paid meter replaces whatever window the user was on
        await self._supersede_active_meters(session, user)
        await self.create_usage_meter(session, user, sub=sub)
        logger.info(f"Created {plan_type}/{interval} subscription {subscription_id} for user {user.uid}")
        return sub

    async def post_subscription_canceled(self, session: AsyncSession, sub: Subscription) -> None:
        """Clear the user's pointer, retire the subscription's meters and start a free meter."""
        user = await session.get(User, sub.user_id)
        if user is None:
            logger.error(f"User of subscription {sub.subscription_id} not found")
            return

        user.subscription_id = None
        await session.execute(
            update(UsageMeter)
            .where(
                UsageMeter.subscription_id == sub.subscription_id,
                UsageMeter.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.flush()

        await self.create_usage_meter(session, user)
        logger.info(f"Subscription {sub.subscription_id} of user {user.uid} canceled ({sub.status})")

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def handle_event(self, session: AsyncSession, event: Dict[str, Any]) -> None:
        """Dispatch a provider event. Unhandled types are ignored."""
        handlers: Dict[str, Callable] = {
            "checkout.session.completed": self.handle_checkout_session_completed,
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_updated,
        }
        handler = handlers.get(event.get("type"))
        if handler is None:
            logger.debug(f"Ignoring webhook event {event.get('type')}")
            return
        await handler(session, event)

    async def handle_checkout_session_completed(self, session: AsyncSession, event: Dict[str, Any]) -> None:
        obj = event["data"]["object"]
        session_id = obj.get("id")
        uid = obj.get("client_reference_id")
        payment_status = obj.get("payment_status")
        logger.info(f"Checkout session {session_id} completed for {uid} (payment_status={payment_status})")

        result = await session.execute(
            select(CheckoutSession)
            .where(CheckoutSession.session_id == session_id)
            .order_by(CheckoutSession.created_at.desc())
            .limit(1)
        )
        checkout = result.scalar_one_or_none()
        if checkout is None:
            logger.error(f"No checkout session found for {session_id}")
            return
        if checkout.uid != uid:
            logger.error(f"Checkout session {session_id} uid mismatch: {checkout.uid} != {uid}")
            return

        checkout.payment_status = payment_status
        checkout.subscription_id = obj.get("subscription")

        if payment_status != "paid":
            logger.warning(f"Checkout session {session_id} not paid: {payment_status}")
            await session.flush()
            return

        user = await self._get_user_by_uid(session, uid)
        if user is None:
            logger.error(f"User {uid} of checkout session {session_id} not found")
            return
        user.customer_id = obj.get("customer")
        await session.flush()

    async def handle_subscription_created(self, session: AsyncSession, event: Dict[str, Any]) -> None:
        obj = event["data"]["object"]
        subscription_id = obj.get("id")
        logger.info(f"Subscription {subscription_id} created (status={obj.get('status')})")

        result = await session.execute(
            select(CheckoutSession)
            .where(
                CheckoutSession.subscription_id == subscription_id,
                CheckoutSession.payment_status == "paid",
            )
            .order_by(CheckoutSession.created_at.desc())
            .limit(1)
        )
        checkout = result.scalar_one_or_none()
        if checkout is None:
            logger.error(f"No paid checkout session found for subscription {subscription_id}")
            return

        try:
            plan_type, interval = parse_lookup_key(checkout.lookup_key)
        except ValueError as e:
            logger.error(f"Subscription {subscription_id}: {e}")
            return

        user = await self._get_user_by_uid(session, checkout.uid)
        if user is None:
            logger.error(f"User {checkout.uid} of subscription {subscription_id} not found")
            return

        await self.create_subscription(
            session,
            user,
            subscription_id=subscription_id,
            lookup_key=checkout.lookup_key,
            plan_type=plan_type,
            interval=interval,
            status=obj.get("status") or ACTIVE_STATUS,
        )

    async def handle_subscription_updated(self, session: AsyncSession, event: Dict[str, Any]) -> None:
        obj = event["data"]["object"]
        subscription_id = obj.get("id")
        status = obj.get("status")
        logger.info(f"Subscription {subscription_id} updated (status={status})")

        sub = await self.get_subscription(session, subscription_id)
        if sub is None:
            logger.error(f"No subscription found for {subscription_id}")
            return

        if status and status != sub.status:
            sub.status = status
            await session.flush()

        if sub.status == ACTIVE_STATUS:
            return
        user = await session.get(User, sub.user_id)
        if user is not None and user.subscription_id == sub.subscription_id:
            await self.post_subscription_canceled(session, sub)

    # =========================================================================
    # USAGE METERS
    # =========================================================================

    async def get_active_meter(
        self,
        session: AsyncSession,
        user: User,
        at: Optional[datetime] = None,
    ) -> Optional[UsageMeter]:
        at = at or utcnow()
        result = await session.execute(
            select(UsageMeter)
            .where(
                UsageMeter.user_id == user.id,
                UsageMeter.deleted_at.is_(None),
                UsageMeter.start_at <= at,
                UsageMeter.end_at > at,
            )
            .order_by(UsageMeter.start_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_usage_meter(
        self,
        session: AsyncSession,
        user: User,
        sub: Optional[Subscription] = None,
        resume_last_meter: bool = False,
    ) -> UsageMeter:
        """
        Create a meter with the quotas of ``sub``'s plan (free plan when None).

        A resumed meter starts at the latest meter's ``end_at`` and chains
        forward one month at a time until it covers now. Otherwise it starts
        at the beginning of the current UTC day.
        """
        now = utcnow()
        plan_type = sub.plan_type if sub else FREE_PLAN
        quota = await session.scalar(
            select(SubscriptionUsageQuota).where(SubscriptionUsageQuota.plan_type == plan_type)
        )
        if quota is None:
            logger.warning(f"No usage quota configured for plan {plan_type}, using zero quotas")

        start_at = start_of_day(now)
        anchor_day = None
        if resume_last_meter:
            last_meter = await session.scalar(
                select(UsageMeter)
                .where(UsageMeter.user_id == user.id, UsageMeter.deleted_at.is_(None))
                .order_by(UsageMeter.start_at.desc())
                .limit(1)
            )
            if last_meter is not None:
                start_at = last_meter.end_at
                # A bound clamped by a short month is below the anchor, never above it
                anchor_day = max(last_meter.start_at.day, last_meter.end_at.day)
        end_at = add_one_month(start_at, day=anchor_day)
        while end_at <= now:
            start_at, end_at = end_at, add_one_month(end_at, day=anchor_day)

        meter = UsageMeter(
            meter_id=gen_usage_meter_id(),
            user_id=user.id,
            subscription_id=sub.subscription_id if sub else None,
            start_at=start_at,
            end_at=end_at,
            t1_token_quota=quota.t1_token_quota if quota else 0,
            t1_token_used=0,
            t2_token_quota=quota.t2_token_quota if quota else 0,
            t2_token_used=0,
        )
        session.add(meter)
        await session.flush()
        logger.info(f"Created {plan_type} usage meter {meter.meter_id} for user {user.uid} [{start_at}, {end_at})")
        return meter

    async def _supersede_active_meters(self, session: AsyncSession, user: User) -> None:
        now = utcnow()
        await session.execute(
            update(UsageMeter)
            .where(
                UsageMeter.user_id == user.id,
                UsageMeter.deleted_at.is_(None),
                UsageMeter.start_at <= now,
                UsageMeter.end_at > now,
            )
            .values(deleted_at=now)
            .execution_options(synchronize_session=False)
        )

    async def check_available_tiers(self, session: AsyncSession, user: User) -> List[str]:
        """
        Tiers the user may consume right now (``used < quota`` on the active meter).

        When none is active a free-plan meter is created, resuming from the
        latest meter. The renewal task keeps paying users on their plan.
        """
        meter = await self.get_active_meter(session, user)
        if meter is None:
            meter = await self.create_usage_meter(session, user, resume_last_meter=True)

        return [
            tier for tier in TIERS
            if getattr(meter, f"{tier}_token_used") < getattr(meter, f"{tier}_token_quota")
        ]

    async def report_usage(self, session: AsyncSession, report: TokenUsageReport) -> bool:
        """
        Record one usage line item and charge it to the matching meter.

        Returns:
            True when a meter was charged. A timestamp outside every meter's
            window leaves the line item in place and charges nothing.
        """
        user = await self._get_user_by_uid(session, report.uid)
        if user is None:
            logger.warning(f"Usage reported for unknown user {report.uid}, dropping")
            return False

        usage = report.usage
        skill = report.skill
        session.add(
            TokenUsage(
                user_id=user.id,
                conv_id=report.conv_id,
                job_id=report.job_id,
                span_id=report.span_id,
                tier=usage.tier,
                model_provider=usage.model_provider,
                model_name=usage.model_name,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                skill_id=skill.skill_id if skill else None,
                skill_tpl_name=skill.tpl_name if skill else None,
                skill_display_name=skill.display_name if skill else None,
            )
        )

        timestamp = to_naive_utc(report.timestamp)
        used_column = getattr(UsageMeter, f"{usage.tier}_token_used")
        result = await session.execute(
            update(UsageMeter)
            .where(
                UsageMeter.user_id == user.id,
                UsageMeter.deleted_at.is_(None),
                UsageMeter.start_at <= timestamp,
                UsageMeter.end_at > timestamp,
            )
            .values({used_column: used_column + usage.total_tokens})
            .execution_options(synchronize_session=False)
        )
        await session.flush()

        if not result.rowcount:
            logger.warning(
                f"No usage meter covers {timestamp} for user {user.uid}; "
                f"{usage.total_tokens} {usage.tier} tokens recorded but not charged"
            )
            return False
        return True

    async def renew_expired_meters(self, session: AsyncSession) -> int:
        """
        Resume meters for users whose latest meter has ended.

        Users that never had a meter are left to lazy creation.

        Returns:
            Number of meters created
        """
        now = utcnow()
        has_active = exists().where(
            UsageMeter.user_id == User.id,
            UsageMeter.deleted_at.is_(None),
            UsageMeter.start_at <= now,
            UsageMeter.end_at > now,
        )
        has_any = exists().where(UsageMeter.user_id == User.id, UsageMeter.deleted_at.is_(None))
        result = await session.execute(select(User).where(has_any, ~has_active))

        created = 0
        for user in result.scalars().all():
            sub = await self.get_active_subscription(session, user)
            await self.create_usage_meter(session, user, sub=sub, resume_last_meter=True)
            created += 1
        if created:
            logger.info(f"Renewed {created} usage meters")
        return created

    async def _get_user_by_uid(self, session: AsyncSession, uid: Optional[str]) -> Optional[User]:
        if not uid:
            return None
        result = await session.execute(select(User).where(User.uid == uid))
        return result.scalar_one_or_none()


subscription_service = SubscriptionService()
