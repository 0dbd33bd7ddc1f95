"""
Tests for operator commands.
"""

import json

import pytest
from sqlalchemy import select

from kbase.commands.migrate_storage_keys import migrate_storage_keys
from kbase.commands.seed_plan_quotas import seed_plan_quotas
from kbase.config import settings
from kbase.core.database.models import Resource, SubscriptionUsageQuota
from kbase.core.utils.time_utils import utcnow


def legacy_resource(user, resource_id, meta, storage_key=None, deleted=False):
    return Resource(
        resource_id=resource_id,
        user_id=user.id,
        resource_type="weblink",
        meta=json.dumps(meta),
        storage_key=storage_key,
        index_status="finish",
        deleted_at=utcnow() if deleted else None,
    )


async def _keys(session):
    rows = (await session.execute(select(Resource).order_by(Resource.resource_id))).scalars().all()
    return {r.resource_id: r.storage_key for r in rows}


class TestMigrateStorageKeys:
    """Promotion of meta.storageKey into the column."""

    @pytest.fixture
    def rows(self, user):
        return [
            legacy_resource(user, "r-1", {"url": "https://a", "storageKey": "resource/r-1"}),
            legacy_resource(user, "r-2", {"url": "https://b"}),
            legacy_resource(user, "r-3", {"storageKey": "old"}, storage_key="resource/r-3"),
            legacy_resource(user, "r-4", {"storageKey": "resource/r-4"}, deleted=True),
        ]

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, db_session, rows):
        db_session.add_all(rows)
        await db_session.flush()

        stats = await migrate_storage_keys(db_session, dry_run=True, batch_size=1)

        assert stats == {"scanned": 3, "migrated": 2, "skipped": 1}
        assert (await _keys(db_session))["r-1"] is None

    @pytest.mark.asyncio
    async def test_promotes_keys(self, db_session, rows):
        db_session.add_all(rows)
        await db_session.flush()

        stats = await migrate_storage_keys(db_session, batch_size=2)

        assert stats == {"scanned": 3, "migrated": 2, "skipped": 1}
        assert await _keys(db_session) == {
            "r-1": "resource/r-1",
            "r-2": None,
            "r-3": "resource/r-3",
            "r-4": "resource/r-4",
        }
        assert await migrate_storage_keys(db_session) == {"scanned": 1, "migrated": 0, "skipped": 1}


class TestSeedPlanQuotas:
    """Quota rows from settings."""

    @pytest.mark.asyncio
    async def test_creates_rows(self, db_session):
        outcome = await seed_plan_quotas(db_session)

        assert outcome == {"free": "created", "plus": "created", "pro": "created"}
        pro = await db_session.scalar(
            select(SubscriptionUsageQuota).where(SubscriptionUsageQuota.plan_type == "pro")
        )
        assert pro.t1_token_quota == settings.pro_t1_token_quota
        assert pro.t2_token_quota == settings.pro_t2_token_quota

    @pytest.mark.asyncio
    async def test_keeps_existing_rows(self, db_session, plan_quotas):
        outcome = await seed_plan_quotas(db_session)

        assert outcome == {"free": "kept", "plus": "created", "pro": "kept"}
        assert plan_quotas["free"].t2_token_quota == 1000

    @pytest.mark.asyncio
    async def test_overwrite_updates_rows(self, db_session, plan_quotas):
        outcome = await seed_plan_quotas(db_session, overwrite=True)

        assert outcome["free"] == "updated"
        assert plan_quotas["free"].t2_token_quota == settings.free_t2_token_quota
