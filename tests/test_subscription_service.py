"""
Tests for SubscriptionService: usage meters, usage reports and webhook-driven subscriptions.
"""

import calendar
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from kbase.core.billing.schemas import SkillMeta, TokenUsageItem, TokenUsageReport
from kbase.core.billing.subscription_service import SubscriptionService
from kbase.core.database.models import CheckoutSession, Subscription, TokenUsage, UsageMeter, User
from kbase.core.exceptions import ResourceValidationError
from kbase.core.utils.time_utils import utcnow


@pytest.fixture
def stripe():
    stripe = MagicMock()
    stripe.list_prices = AsyncMock(return_value=[{"id": "price_pro_monthly"}])
    stripe.create_checkout_session = AsyncMock(
        return_value={"id": "cs_new", "url": "https://checkout.stripe.test/cs_new"}
    )
    stripe.create_portal_session = AsyncMock(
        return_value={"id": "bps_1", "url": "https://billing.stripe.test/bps_1"}
    )
    return stripe


@pytest.fixture
def service(stripe):
    return SubscriptionService(stripe=stripe)


@pytest_asyncio.fixture
async def pro_meter(db_session, user, plan_quotas, service):
    sub = Subscription(
        subscription_id="sub_pro",
        user_id=user.id,
        lookup_key="pro_monthly",
        plan_type="pro",
        interval="monthly",
        status="active",
    )
    db_session.add(sub)
    await db_session.flush()
    return await service.create_usage_meter(db_session, user, sub=sub)


def usage_report(uid="u-owner", tier="t2", input_tokens=100, output_tokens=50, timestamp=None, **kwargs):
    return TokenUsageReport(
        uid=uid,
        usage=TokenUsageItem(
            tier=tier,
            model_provider="openai",
            model_name="gpt-4o-mini",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        ),
        timestamp=timestamp or utcnow(),
        **kwargs,
    )


def event(event_type, **obj):
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


async def _live_meter_count(session, user) -> int:
    result = await session.execute(
        select(func.count(UsageMeter.id)).where(
            UsageMeter.user_id == user.id,
            UsageMeter.deleted_at.is_(None),
        )
    )
    return result.scalar_one()


# =============================================================================
# Usage meters
# =============================================================================


class TestCheckAvailableTiers:
    """Lazy meter creation and quota checks."""

    @pytest.mark.asyncio
    async def test_creates_free_meter_once(self, db_session, user, plan_quotas, service):
        first = await service.check_available_tiers(db_session, user)
        second = await service.check_available_tiers(db_session, user)

        assert first == ["t2"]
        assert second == ["t2"]
        assert await _live_meter_count(db_session, user) == 1

        meter = await service.get_active_meter(db_session, user)
        assert meter.subscription_id is None
        assert meter.t1_token_quota == 0
        assert meter.t2_token_quota == 1000
        assert meter.start_at <= utcnow() < meter.end_at

    @pytest.mark.asyncio
    async def test_paid_meter_offers_both_tiers(self, db_session, user, pro_meter, service):
        assert await service.check_available_tiers(db_session, user) == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_quota_boundary(self, db_session, user, pro_meter, service):
        pro_meter.t1_token_used = pro_meter.t1_token_quota - 1
        await db_session.flush()
        assert "t1" in await service.check_available_tiers(db_session, user)

        charged = await service.report_usage(db_session, usage_report(tier="t1", input_tokens=1, output_tokens=0))
        await db_session.refresh(pro_meter)

        assert charged is True
        assert pro_meter.t1_token_used == pro_meter.t1_token_quota
        assert "t1" not in await service.check_available_tiers(db_session, user)

    @pytest.mark.asyncio
    async def test_resumes_from_expired_meter(self, db_session, user, plan_quotas, service):
        old_end = utcnow() - timedelta(days=40)
        db_session.add(
            UsageMeter(
                meter_id="um-old",
                user_id=user.id,
                start_at=old_end - timedelta(days=30),
                end_at=old_end,
            )
        )
        await db_session.flush()

        await service.check_available_tiers(db_session, user)
        meter = await service.get_active_meter(db_session, user)

        assert meter.meter_id != "um-old"
        assert meter.start_at >= old_end
        assert meter.start_at <= utcnow() < meter.end_at

    @pytest.mark.asyncio
    async def test_resumed_chain_keeps_month_end_anchor(self, db_session, user, plan_quotas, service):
        db_session.add(
            UsageMeter(
                meter_id="um-jan",
                user_id=user.id,
                start_at=datetime(2025, 12, 31),
                end_at=datetime(2026, 1, 31),
            )
        )
        await db_session.flush()

        meter = await service.create_usage_meter(db_session, user, resume_last_meter=True)

        for bound in (meter.start_at, meter.end_at):
            assert bound.day == calendar.monthrange(bound.year, bound.month)[1]
        assert meter.start_at <= utcnow() < meter.end_at

    @pytest.mark.asyncio
    async def test_missing_quota_row_gives_zero_quotas(self, db_session, user, service):
        assert await service.check_available_tiers(db_session, user) == []


# =============================================================================
# Usage reports
# =============================================================================


class TestReportUsage:
    """Line items and meter counters."""

    @pytest.mark.asyncio
    async def test_charges_total_tokens(self, db_session, user, pro_meter, service):
        report = usage_report(
            conv_id="c-1",
            job_id="j-1",
            skill=SkillMeta(skill_id="s-1", tpl_name="summarize", display_name="Summarize"),
        )

        assert await service.report_usage(db_session, report) is True
        await db_session.refresh(pro_meter)

        assert pro_meter.t2_token_used == 150
        assert pro_meter.t1_token_used == 0
        rows = (await db_session.execute(select(TokenUsage))).scalars().all()
        assert len(rows) == 1
        assert rows[0].user_id == user.id
        assert rows[0].input_tokens == 100
        assert rows[0].output_tokens == 50
        assert rows[0].skill_tpl_name == "summarize"

    @pytest.mark.asyncio
    async def test_aware_timestamp_is_normalized(self, db_session, user, pro_meter, service):
        report = usage_report(timestamp=datetime.now(timezone(timedelta(hours=8))))

        assert await service.report_usage(db_session, report) is True

    @pytest.mark.asyncio
    async def test_no_covering_meter_records_only(self, db_session, user, service):
        assert await service.report_usage(db_session, usage_report()) is False

        count = await db_session.scalar(select(func.count(TokenUsage.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_timestamp_at_window_end_not_charged(self, db_session, user, pro_meter, service):
        report = usage_report(timestamp=pro_meter.end_at)

        assert await service.report_usage(db_session, report) is False

    @pytest.mark.asyncio
    async def test_unknown_user_dropped(self, db_session, user, service):
        assert await service.report_usage(db_session, usage_report(uid="u-nobody")) is False

        count = await db_session.scalar(select(func.count(TokenUsage.id)))
        assert count == 0


# =============================================================================
# Renewal
# =============================================================================


class TestRenewExpiredMeters:
    """Periodic renewal of ended meters."""

    @pytest.mark.asyncio
    async def test_renews_only_users_with_expired_meters(self, db_session, user, other_user, plan_quotas, service):
        old_end = utcnow() - timedelta(days=3)
        db_session.add(
            UsageMeter(
                meter_id="um-old",
                user_id=user.id,
                start_at=old_end - timedelta(days=30),
                end_at=old_end,
            )
        )
        await db_session.flush()

        assert await service.renew_expired_meters(db_session) == 1

        meter = await service.get_active_meter(db_session, user)
        assert meter.start_at == old_end
        assert meter.t2_token_quota == 1000
        assert await service.get_active_meter(db_session, other_user) is None
        assert await service.renew_expired_meters(db_session) == 0

    @pytest.mark.asyncio
    async def test_keeps_paying_user_on_plan(self, db_session, user, plan_quotas, service):
        db_session.add(
            Subscription(
                subscription_id="sub_pro",
                user_id=user.id,
                lookup_key="pro_monthly",
                plan_type="pro",
                interval="monthly",
                status="active",
            )
        )
        user.subscription_id = "sub_pro"
        old_end = utcnow() - timedelta(hours=1)
        db_session.add(
            UsageMeter(
                meter_id="um-old",
                user_id=user.id,
                subscription_id="sub_pro",
                start_at=old_end - timedelta(days=30),
                end_at=old_end,
            )
        )
        await db_session.flush()

        assert await service.renew_expired_meters(db_session) == 1

        meter = await service.get_active_meter(db_session, user)
        assert meter.subscription_id == "sub_pro"
        assert meter.t1_token_quota == 5000


# =============================================================================
# Checkout / portal
# =============================================================================


class TestCheckoutAndPortal:
    """Provider session creation."""

    @pytest.mark.asyncio
    async def test_checkout_session_recorded(self, db_session, user, service, stripe):
        checkout = await service.create_checkout_session(db_session, user, "pro_monthly")

        assert checkout["url"].endswith("cs_new")
        stripe.list_prices.assert_awaited_once_with("pro_monthly")
        stripe.create_checkout_session.assert_awaited_once_with(
            price_id="price_pro_monthly",
            client_reference_id="u-owner",
            customer_email="owner@example.com",
            customer_id=None,
        )
        row = await db_session.scalar(select(CheckoutSession).where(CheckoutSession.session_id == "cs_new"))
        assert row.uid == "u-owner"
        assert row.lookup_key == "pro_monthly"
        assert row.payment_status is None

    @pytest.mark.asyncio
    async def test_unknown_lookup_key_rejected(self, db_session, user, service, stripe):
        with pytest.raises(ResourceValidationError):
            await service.create_checkout_session(db_session, user, "gold_weekly")
        stripe.list_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_price_rejected(self, db_session, user, service, stripe):
        stripe.list_prices.return_value = []

        with pytest.raises(ResourceValidationError):
            await service.create_checkout_session(db_session, user, "plus_yearly")
        stripe.create_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_portal_requires_customer(self, db_session, user, service):
        with pytest.raises(ResourceValidationError):
            await service.create_portal_session(user)

    @pytest.mark.asyncio
    async def test_portal_session(self, db_session, user, service, stripe):
        user.customer_id = "cus_1"

        portal = await service.create_portal_session(user)

        assert portal["id"] == "bps_1"
        stripe.create_portal_session.assert_awaited_once_with("cus_1")


# =============================================================================
# Webhook flow
# =============================================================================


class TestSubscriptionWebhooks:
    """checkout.session.completed -> customer.subscription.created -> updated."""

    @pytest_asyncio.fixture
    async def checkout(self, db_session, user):
        row = CheckoutSession(session_id="cs_1", uid=user.uid, lookup_key="pro_monthly")
        db_session.add(row)
        await db_session.flush()
        return row

    async def _subscribe(self, session, service, status="active"):
        await service.handle_event(
            session,
            event(
                "checkout.session.completed",
                id="cs_1",
                client_reference_id="u-owner",
                payment_status="paid",
                subscription="sub_1",
                customer="cus_1",
            ),
        )
        await service.handle_event(session, event("customer.subscription.created", id="sub_1", status=status))

    @pytest.mark.asyncio
    async def test_checkout_completed_links_customer(self, db_session, user, checkout, service):
        await service.handle_event(
            db_session,
            event(
                "checkout.session.completed",
                id="cs_1",
                client_reference_id="u-owner",
                payment_status="paid",
                subscription="sub_1",
                customer="cus_1",
            ),
        )

        assert checkout.payment_status == "paid"
        assert checkout.subscription_id == "sub_1"
        assert user.customer_id == "cus_1"

    @pytest.mark.asyncio
    async def test_checkout_uid_mismatch_ignored(self, db_session, user, checkout, service):
        await service.handle_event(
            db_session,
            event(
                "checkout.session.completed",
                id="cs_1",
                client_reference_id="u-other",
                payment_status="paid",
                subscription="sub_1",
                customer="cus_1",
            ),
        )

        assert checkout.payment_status is None
        assert user.customer_id is None

    @pytest.mark.asyncio
    async def test_unpaid_checkout_does_not_link_customer(self, db_session, user, checkout, service):
        await service.handle_event(
            db_session,
            event(
                "checkout.session.completed",
                id="cs_1",
                client_reference_id="u-owner",
                payment_status="unpaid",
                subscription="sub_1",
            ),
        )

        assert checkout.payment_status == "unpaid"
        assert user.customer_id is None

    @pytest.mark.asyncio
    async def test_subscription_created_replaces_free_meter(
        self, db_session, user, plan_quotas, checkout, service
    ):
        await service.check_available_tiers(db_session, user)

        await self._subscribe(db_session, service)

        sub = await service.get_active_subscription(db_session, user)
        assert sub.subscription_id == "sub_1"
        assert sub.plan_type == "pro"
        assert sub.interval == "monthly"
        assert user.subscription_id == "sub_1"
        assert await _live_meter_count(db_session, user) == 1
        meter = await service.get_active_meter(db_session, user)
        assert meter.subscription_id == "sub_1"
        assert meter.t1_token_quota == 5000

    @pytest.mark.asyncio
    async def test_subscription_created_without_paid_checkout_ignored(self, db_session, user, checkout, service):
        await service.handle_event(db_session, event("customer.subscription.created", id="sub_1", status="active"))

        assert await service.get_subscription(db_session, "sub_1") is None

    @pytest.mark.asyncio
    async def test_duplicate_created_event_is_idempotent(self, db_session, user, plan_quotas, checkout, service):
        await self._subscribe(db_session, service)
        await service.handle_event(db_session, event("customer.subscription.created", id="sub_1", status="active"))

        count = await db_session.scalar(select(func.count(Subscription.id)))
        assert count == 1
        assert await _live_meter_count(db_session, user) == 1

    @pytest.mark.asyncio
    async def test_cancellation_returns_user_to_free(self, db_session, user, plan_quotas, checkout, service):
        await self._subscribe(db_session, service)

        await service.handle_event(db_session, event("customer.subscription.updated", id="sub_1", status="canceled"))

        sub = await service.get_subscription(db_session, "sub_1")
        assert sub.status == "canceled"
        assert user.subscription_id is None
        assert await service.get_active_subscription(db_session, user) is None
        assert await _live_meter_count(db_session, user) == 1
        meter = await service.get_active_meter(db_session, user)
        assert meter.subscription_id is None
        assert meter.t2_token_quota == 1000

    @pytest.mark.asyncio
    async def test_incomplete_subscription_canceled_returns_user_to_free(
        self, db_session, user, plan_quotas, checkout, service
    ):
        await self._subscribe(db_session, service, status="incomplete")
        assert user.subscription_id == "sub_1"

        await service.handle_event(db_session, event("customer.subscription.updated", id="sub_1", status="canceled"))

        assert user.subscription_id is None
        assert await _live_meter_count(db_session, user) == 1
        meter = await service.get_active_meter(db_session, user)
        assert meter.subscription_id is None
        assert meter.t2_token_quota == 1000

    @pytest.mark.asyncio
    async def test_duplicate_cancellation_creates_one_free_meter(
        self, db_session, user, plan_quotas, checkout, service
    ):
        await self._subscribe(db_session, service)
        canceled = event("customer.subscription.updated", id="sub_1", status="canceled")

        await service.handle_event(db_session, canceled)
        await service.handle_event(db_session, canceled)

        assert await _live_meter_count(db_session, user) == 1

    @pytest.mark.asyncio
    async def test_deleted_event_cancels(self, db_session, user, plan_quotas, checkout, service):
        await self._subscribe(db_session, service)

        await service.handle_event(db_session, event("customer.subscription.deleted", id="sub_1", status="canceled"))

        assert user.subscription_id is None

    @pytest.mark.asyncio
    async def test_non_cancelling_update_keeps_meter(self, db_session, user, plan_quotas, checkout, service):
        await self._subscribe(db_session, service)

        await service.handle_event(db_session, event("customer.subscription.updated", id="sub_1", status="active"))

        meter = await service.get_active_meter(db_session, user)
        assert meter.subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, db_session, user, service):
        await service.handle_event(db_session, event("invoice.paid", id="in_1"))

    @pytest.mark.asyncio
    async def test_update_for_unknown_subscription_ignored(self, db_session, user, service):
        await service.handle_event(db_session, event("customer.subscription.updated", id="sub_x", status="canceled"))

        count = await db_session.scalar(select(func.count(User.id)).where(User.subscription_id.is_not(None)))
        assert count == 0
