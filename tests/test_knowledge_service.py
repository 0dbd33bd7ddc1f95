"""
Tests for KnowledgeService: resource/collection records, ownership and status writes.
"""

import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from kbase.core.database.models import Collection, Resource
from kbase.core.exceptions import (
    InvalidStatusTransitionError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ResourceValidationError,
)
from kbase.core.knowledge.knowledge_service import KnowledgeService
from kbase.core.knowledge.meta import build_meta
from kbase.core.knowledge.schemas import (
    ResourceData,
    UpsertCollectionRequest,
    UpsertResourceRequest,
)


@pytest.fixture
def indexer():
    indexer = MagicMock()
    indexer.delete_resource_data = AsyncMock(return_value=0)
    return indexer


@pytest.fixture
def service(mock_storage, indexer):
    return KnowledgeService(storage=mock_storage, indexer=indexer)


def weblink_request(**kwargs) -> UpsertResourceRequest:
    data = kwargs.pop("data", ResourceData(url="https://example.com"))
    return UpsertResourceRequest(resource_type="weblink", data=data, **kwargs)


def note_request(**kwargs) -> UpsertResourceRequest:
    return UpsertResourceRequest(resource_type="note", **kwargs)


async def _count(session, model) -> int:
    return (await session.execute(select(func.count(model.id)))).scalar_one()


# =============================================================================
# Resource creation
# =============================================================================


class TestCreateResource:
    """Creation rules and the ingestion payload."""

    @pytest.mark.asyncio
    async def test_note_read_only_defaults_false(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request(content="hi"))
        assert resource.read_only is False

    @pytest.mark.asyncio
    async def test_note_read_only_override(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request(read_only=True))
        assert resource.read_only is True

    @pytest.mark.asyncio
    async def test_weblink_read_only_defaults_true(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, weblink_request())
        assert resource.read_only is True

    @pytest.mark.asyncio
    async def test_weblink_read_only_override(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, weblink_request(read_only=False))
        assert resource.read_only is False

    @pytest.mark.asyncio
    async def test_weblink_without_url_or_link_id_rejected(self, db_session, user, service):
        with pytest.raises(ResourceValidationError):
            await service.create_resource(db_session, user, weblink_request(data=ResourceData(title="x")))

        assert await _count(db_session, Resource) == 0
        assert await _count(db_session, Collection) == 0

    @pytest.mark.asyncio
    async def test_weblink_with_link_id_only_accepted(self, db_session, user, service):
        resource, payload = await service.create_resource(
            db_session, user, weblink_request(data=ResourceData(link_id="l-1"))
        )
        assert resource.index_status == "processing"
        assert payload.data.link_id == "l-1"

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, db_session, user, service):
        with pytest.raises(ResourceValidationError):
            await service.create_resource(db_session, user, UpsertResourceRequest(resource_type="video"))
        assert await _count(db_session, Resource) == 0

    @pytest.mark.asyncio
    async def test_starts_processing_with_payload(self, db_session, user, service):
        request = weblink_request(
            title="Example",
            data=ResourceData(url="https://example.com", title="Page"),
            collection_name="Reading list",
        )
        resource, payload = await service.create_resource(db_session, user, request)

        assert resource.resource_id.startswith("r-")
        assert resource.index_status == "processing"
        assert resource.title == "Example"
        assert json.loads(resource.meta)["url"] == "https://example.com"
        assert payload.resource_id == resource.resource_id
        assert payload.user_id == str(user.id)
        assert payload.title == "Example"
        assert payload.collection_id == resource.collections[0].collection_id
        assert resource.collections[0].title == "Reading list"

    @pytest.mark.asyncio
    async def test_title_defaults(self, db_session, user, service):
        from_data, payload = await service.create_resource(
            db_session, user, weblink_request(data=ResourceData(url="https://example.com", title="Page"))
        )
        untitled, _ = await service.create_resource(db_session, user, note_request())

        assert from_data.title == "Page"
        assert payload.title == "Page"
        assert untitled.title == "Untitled"

    @pytest.mark.asyncio
    async def test_connects_existing_collection(self, db_session, user, service):
        collection = await service.upsert_collection(db_session, user, UpsertCollectionRequest(title="Mine"))

        resource, payload = await service.create_resource(
            db_session, user, note_request(collection_id=collection.collection_id)
        )

        assert payload.collection_id == collection.collection_id
        assert await _count(db_session, Collection) == 1

    @pytest.mark.asyncio
    async def test_creates_missing_collection_with_default_title(self, db_session, user, service):
        resource, payload = await service.create_resource(db_session, user, note_request())

        collection = resource.collections[0]
        assert collection.title == "Default Collection"
        assert collection.collection_id.startswith("cl-")

    @pytest.mark.asyncio
    async def test_foreign_collection_rejected(self, db_session, user, other_user, service):
        collection = await service.upsert_collection(db_session, other_user, UpsertCollectionRequest(title="Theirs"))

        with pytest.raises(PermissionDeniedError):
            await service.create_resource(db_session, user, note_request(collection_id=collection.collection_id))


# =============================================================================
# Resource reads
# =============================================================================


class TestReadResources:
    """Listing, detail access and document hydration."""

    @pytest.mark.asyncio
    async def test_list_excludes_deleted_newest_first(self, db_session, user, service):
        first, _ = await service.create_resource(db_session, user, note_request(title="first"))
        second, _ = await service.create_resource(db_session, user, note_request(title="second"))
        gone, _ = await service.create_resource(db_session, user, note_request(title="gone"))
        first.updated_at = datetime(2026, 1, 2)
        second.updated_at = datetime(2026, 1, 3)
        await db_session.flush()
        await service.delete_resource(db_session, user, gone.resource_id)

        listed = await service.list_resources(db_session, user)

        assert [r.title for r in listed] == ["second", "first"]

    @pytest.mark.asyncio
    async def test_list_paginates(self, db_session, user, service):
        for i in range(3):
            resource, _ = await service.create_resource(db_session, user, note_request(title=f"n{i}"))
            resource.updated_at = datetime(2026, 1, 1) + timedelta(days=i)
        await db_session.flush()

        page_one = await service.list_resources(db_session, user, page=1, page_size=2)
        page_two = await service.list_resources(db_session, user, page=2, page_size=2)

        assert [r.title for r in page_one] == ["n2", "n1"]
        assert [r.title for r in page_two] == ["n0"]

    @pytest.mark.asyncio
    async def test_list_only_own(self, db_session, user, other_user, service):
        await service.create_resource(db_session, other_user, note_request(title="theirs"))
        assert await service.list_resources(db_session, user) == []

    @pytest.mark.asyncio
    async def test_list_by_collection(self, db_session, user, service):
        inside, payload = await service.create_resource(db_session, user, note_request(title="inside"))
        await service.create_resource(db_session, user, note_request(title="outside"))

        listed = await service.list_resources(db_session, user, collection_id=payload.collection_id)

        assert [r.title for r in listed] == ["inside"]

    @pytest.mark.asyncio
    async def test_private_resource_hidden_from_others(self, db_session, user, other_user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())

        with pytest.raises(PermissionDeniedError):
            await service.get_resource_detail(db_session, other_user, resource.resource_id)

    @pytest.mark.asyncio
    async def test_public_resource_readable_by_others(self, db_session, user, other_user, service):
        resource, _ = await service.create_resource(db_session, user, note_request(is_public=True))

        detail = await service.get_resource_detail(db_session, other_user, resource.resource_id)

        assert detail.resource.resource_id == resource.resource_id

    @pytest.mark.asyncio
    async def test_deleted_resource_not_found(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())
        await service.delete_resource(db_session, user, resource.resource_id)

        with pytest.raises(ResourceNotFoundError):
            await service.get_resource_detail(db_session, user, resource.resource_id)

    @pytest.mark.asyncio
    async def test_hydrates_doc_from_column(self, db_session, user, service, mock_storage):
        resource, _ = await service.create_resource(db_session, user, note_request())
        resource.storage_key = "resource/" + resource.resource_id
        mock_storage.objects[resource.storage_key] = b"# Hello"

        detail = await service.get_resource_detail(db_session, user, resource.resource_id, with_doc=True)

        assert detail.doc == "# Hello"

    @pytest.mark.asyncio
    async def test_hydrates_doc_from_legacy_meta(self, db_session, user, service, mock_storage):
        resource = Resource(
            resource_id="r-legacy",
            user_id=user.id,
            resource_type="weblink",
            title="Legacy",
            meta=json.dumps({"url": "https://example.com", "storageKey": "legacy/key"}),
            storage_key=None,
            index_status="finish",
        )
        db_session.add(resource)
        await db_session.flush()
        mock_storage.objects["legacy/key"] = b"legacy body"

        detail = await service.get_resource_detail(db_session, user, "r-legacy", with_doc=True)

        assert detail.doc == "legacy body"
        mock_storage.download_data.assert_called_once_with("legacy/key")

    @pytest.mark.asyncio
    async def test_no_doc_without_flag(self, db_session, user, service, mock_storage):
        resource, _ = await service.create_resource(db_session, user, note_request(storage_key="resource/x"))

        detail = await service.get_resource_detail(db_session, user, resource.resource_id)

        assert detail.doc is None
        mock_storage.download_data.assert_not_called()


# =============================================================================
# Resource mutations
# =============================================================================


class TestMutateResources:
    """Update and delete are owner-only."""

    @pytest.mark.asyncio
    async def test_update_fields(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request(title="old"))

        updated = await service.update_resource(
            db_session, user, resource.resource_id, UpsertResourceRequest(title="new", is_public=True)
        )

        assert updated.title == "new"
        assert updated.is_public is True
        assert json.loads(updated.meta)["title"] == "new"

    @pytest.mark.asyncio
    async def test_update_content_writes_blob(self, db_session, user, service, mock_storage):
        resource, _ = await service.create_resource(db_session, user, note_request())

        updated = await service.update_resource(
            db_session, user, resource.resource_id, UpsertResourceRequest(content="three small words")
        )

        key = f"resource/{resource.resource_id}"
        assert mock_storage.objects[key] == b"three small words"
        assert updated.storage_key == key
        assert updated.word_count == 3
        assert json.loads(updated.meta)["storageKey"] == key

    @pytest.mark.asyncio
    async def test_update_by_non_owner_rejected(self, db_session, user, other_user, service):
        resource, _ = await service.create_resource(db_session, user, note_request(is_public=True))

        with pytest.raises(PermissionDeniedError):
            await service.update_resource(
                db_session, other_user, resource.resource_id, UpsertResourceRequest(title="mine now")
            )

    @pytest.mark.asyncio
    async def test_delete_is_soft_and_drops_index(self, db_session, user, service, indexer):
        resource, _ = await service.create_resource(db_session, user, note_request())

        await service.delete_resource(db_session, user, resource.resource_id)

        row = await db_session.scalar(select(Resource).where(Resource.resource_id == resource.resource_id))
        assert row is not None
        assert row.deleted_at is not None
        indexer.delete_resource_data.assert_awaited_once_with(db_session, user.id, resource.resource_id)

    @pytest.mark.asyncio
    async def test_delete_by_non_owner_rejected(self, db_session, user, other_user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())

        with pytest.raises(PermissionDeniedError):
            await service.delete_resource(db_session, other_user, resource.resource_id)

    @pytest.mark.asyncio
    async def test_delete_unknown(self, db_session, user, service):
        with pytest.raises(ResourceNotFoundError):
            await service.delete_resource(db_session, user, "r-missing")


# =============================================================================
# Collections
# =============================================================================


class TestCollections:
    """Collection CRUD."""

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, db_session, user, service):
        created = await service.upsert_collection(db_session, user, UpsertCollectionRequest(title="A"))
        updated = await service.upsert_collection(
            db_session,
            user,
            UpsertCollectionRequest(collection_id=created.collection_id, description="about A"),
        )

        assert updated.id == created.id
        assert updated.title == "A"
        assert updated.description == "about A"

    @pytest.mark.asyncio
    async def test_detail_lists_live_resources(self, db_session, user, service):
        kept, payload = await service.create_resource(db_session, user, note_request(title="kept"))
        removed, _ = await service.create_resource(
            db_session, user, note_request(title="removed", collection_id=payload.collection_id)
        )
        await service.delete_resource(db_session, user, removed.resource_id)

        collection, resources = await service.get_collection_detail(db_session, user, payload.collection_id)

        assert collection.collection_id == payload.collection_id
        assert [r.title for r in resources] == ["kept"]

    @pytest.mark.asyncio
    async def test_private_collection_hidden_from_others(self, db_session, user, other_user, service):
        collection = await service.upsert_collection(db_session, user, UpsertCollectionRequest(title="A"))

        with pytest.raises(PermissionDeniedError):
            await service.get_collection_detail(db_session, other_user, collection.collection_id)

    @pytest.mark.asyncio
    async def test_public_collection_readable_by_others(self, db_session, user, other_user, service):
        collection = await service.upsert_collection(
            db_session, user, UpsertCollectionRequest(title="A", is_public=True)
        )

        found, _ = await service.get_collection_detail(db_session, other_user, collection.collection_id)

        assert found.id == collection.id

    @pytest.mark.asyncio
    async def test_update_by_non_owner_rejected(self, db_session, user, other_user, service):
        collection = await service.upsert_collection(db_session, user, UpsertCollectionRequest(title="A"))

        with pytest.raises(PermissionDeniedError):
            await service.update_collection(
                db_session, other_user, collection.collection_id, UpsertCollectionRequest(title="B")
            )

    @pytest.mark.asyncio
    async def test_delete_does_not_cascade(self, db_session, user, service):
        resource, payload = await service.create_resource(db_session, user, note_request())

        await service.delete_collection(db_session, user, payload.collection_id)

        assert await service.list_collections(db_session, user) == []
        assert [r.resource_id for r in await service.list_resources(db_session, user)] == [resource.resource_id]
        with pytest.raises(ResourceNotFoundError):
            await service.get_collection_detail(db_session, user, payload.collection_id)

    @pytest.mark.asyncio
    async def test_deleted_collection_id_not_reused(self, db_session, user, service):
        collection = await service.upsert_collection(db_session, user, UpsertCollectionRequest(title="A"))
        await service.delete_collection(db_session, user, collection.collection_id)

        with pytest.raises(ResourceNotFoundError):
            await service.create_resource(db_session, user, note_request(collection_id=collection.collection_id))


# =============================================================================
# Index status writes
# =============================================================================


class TestIndexStatusWrites:
    """complete_ingestion / mark_ingestion_failed / reopen_for_ingestion."""

    @pytest.mark.asyncio
    async def test_complete_from_processing(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())
        meta = build_meta("note", {"storageKey": "resource/x"})

        await service.complete_ingestion(db_session, resource.resource_id, user.id, "resource/x", 7, meta)
        await db_session.refresh(resource)

        assert resource.index_status == "finish"
        assert resource.word_count == 7
        assert resource.storage_key == "resource/x"

    @pytest.mark.asyncio
    async def test_complete_settled_row_rejected(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())
        assert await service.mark_ingestion_failed(db_session, resource.resource_id, user.id) is True

        with pytest.raises(InvalidStatusTransitionError):
            await service.complete_ingestion(
                db_session, resource.resource_id, user.id, "k", 0, build_meta("note", {})
            )

    @pytest.mark.asyncio
    async def test_fail_settled_row_is_noop(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())
        await service.complete_ingestion(db_session, resource.resource_id, user.id, "k", 0, build_meta("note", {}))

        assert await service.mark_ingestion_failed(db_session, resource.resource_id, user.id) is False
        await db_session.refresh(resource)
        assert resource.index_status == "finish"

    @pytest.mark.asyncio
    async def test_reopen_settled_row(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())
        await service.mark_ingestion_failed(db_session, resource.resource_id, user.id)
        await db_session.refresh(resource)

        await service.reopen_for_ingestion(db_session, resource)
        await db_session.refresh(resource)

        assert resource.index_status == "processing"

    @pytest.mark.asyncio
    async def test_reopen_processing_rejected(self, db_session, user, service):
        resource, _ = await service.create_resource(db_session, user, note_request())

        with pytest.raises(InvalidStatusTransitionError):
            await service.reopen_for_ingestion(db_session, resource)
