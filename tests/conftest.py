import os

# Configure an in-memory database and quiet integrations before importing kbase modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("EMBEDDING_ENABLED", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_123")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import uuid  # noqa: E402
from datetime import datetime  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from kbase.core.database.models import SubscriptionUsageQuota, User  # noqa: E402
from kbase.core.shared.database_service import database_service  # noqa: E402


@pytest_asyncio.fixture
async def db_session():
    """Fresh schema per test on the shared in-memory SQLite connection."""
    await database_service.init_db()
    async with database_service.get_session() as session:
        yield session
        await session.rollback()
    await database_service.drop_all()
    # The pooled aiosqlite connection is bound to this test's event loop
    await database_service.close()


@pytest_asyncio.fixture
async def user(db_session):
    user = User(uid="u-owner", email="owner@example.com")
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def other_user(db_session):
    user = User(uid="u-other", email="other@example.com")
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def plan_quotas(db_session):
    rows = [
        SubscriptionUsageQuota(plan_type="free", t1_token_quota=0, t2_token_quota=1000),
        SubscriptionUsageQuota(plan_type="pro", t1_token_quota=5000, t2_token_quota=50000),
    ]
    db_session.add_all(rows)
    await db_session.flush()
    return {row.plan_type: row for row in rows}


@pytest.fixture
def mock_storage():
    """In-memory stand-in for MinIOService."""
    objects = {}
    storage = MagicMock()
    storage.objects = objects

    def upload_data(key, data, content_type="text/markdown; charset=utf-8"):
        objects[key] = data.encode("utf-8") if isinstance(data, str) else data
        return "etag"

    def download_data(key):
        if key not in objects:
            raise KeyError(key)
        return objects[key]

    storage.upload_data.side_effect = upload_data
    storage.download_data.side_effect = download_data
    return storage


@pytest.fixture
def api_user():
    """Detached user for API tests that bypass the database."""
    return User(id=uuid.uuid4(), uid="u-api", email="api@example.com", created_at=datetime(2026, 1, 1))
