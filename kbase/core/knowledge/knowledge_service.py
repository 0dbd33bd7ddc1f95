# ============================================================================
# kbase/core/knowledge/knowledge_service.py
# ============================================================================
"""
Knowledge Service - resource and collection records.

Handles create/read/update/soft-delete of collections and resources, with
ownership checks on every mutation and public-read access on reads. Lists are
paginated, exclude soft-deleted rows and are ordered by ``updated_at`` desc.

Resource creation only writes the placeholder row (``index_status =
processing``) and returns the typed payload for the ingestion worker. The
caller commits first and enqueues second, so the worker never sees a row that
does not exist yet:

    resource, payload = await knowledge_service.create_resource(session, user, req)
    await session.commit()
    enqueue_finalize_resource(payload)

Index status writes go through ``complete_ingestion``, ``mark_ingestion_failed``
and ``reopen_for_ingestion`` only. Each runs a conditional UPDATE keyed on the
current status, so an illegal transition never reaches the row.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
from uuid import UUID

from minio.error import S3Error
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.core.database.models import Collection, Resource, User, resource_collections
from kbase.core.exceptions import (
    InvalidStatusTransitionError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ResourceValidationError,
)
from kbase.core.search.index_service import IndexService, index_service
from kbase.core.storage.minio_service import MinIOService, get_minio_service
from kbase.core.utils.ids import gen_collection_id, gen_resource_id, resource_storage_key
from kbase.core.utils.text_utils import count_words
from kbase.core.utils.time_utils import utcnow

from .meta import NoteMeta, WeblinkMeta, build_meta, dump_meta, load_meta
from .schemas import (
    FinalizeResourcePayload,
    ResourceData,
    UpsertCollectionRequest,
    UpsertResourceRequest,
)
from .status import IndexStatus, check_reopen, check_transition

logger = logging.getLogger("kbase.knowledge")

DEFAULT_COLLECTION_TITLE = "Default Collection"
DEFAULT_RESOURCE_TITLE = "Untitled"


def resolve_storage_key(resource: Resource) -> Optional[str]:
    """
    Storage key of a resource.

    The ``storage_key`` column is canonical. Rows written before the column
    existed only carry ``meta.storageKey``; those are read through until
    ``kbase.commands.migrate_storage_keys`` has promoted them.
    """
    if resource.storage_key:
        return resource.storage_key
    return load_meta(resource.resource_type, resource.meta).storage_key


@dataclass
class ResourceDetail:
    """Resource with parsed meta and, when requested, its document body."""

    resource: Resource
    meta: Union[WeblinkMeta, NoteMeta]
    doc: Optional[str] = None


class KnowledgeService:
    """Collection and resource records with ownership and status rules."""

    def __init__(
        self,
        storage: Optional[MinIOService] = None,
        indexer: Optional[IndexService] = None,
    ):
        self._storage = storage
        self.indexer = indexer or index_service

    @property
    def storage(self) -> MinIOService:
        if self._storage is None:
            self._storage = get_minio_service()
        return self._storage

    # =========================================================================
    # COLLECTIONS
    # =========================================================================

    async def list_collections(
        self,
        session: AsyncSession,
        user: User,
        page: int = 1,
        page_size: int = 10,
    ) -> List[Collection]:
        query = (
            select(Collection)
            .where(Collection.user_id == user.id, Collection.deleted_at.is_(None))
            .order_by(Collection.updated_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_collection_detail(
        self,
        session: AsyncSession,
        user: User,
        collection_id: str,
    ) -> Tuple[Collection, List[Resource]]:
        """
        Get a collection with its live resources.

        Raises:
            ResourceNotFoundError: Unknown or deleted collection
            PermissionDeniedError: Private collection of another user
        """
        collection = await self._get_collection(session, collection_id)
        if collection.user_id != user.id and not collection.is_public:
            raise PermissionDeniedError(f"No access to collection {collection_id}")

        query = (
            select(Resource)
            .join(resource_collections, resource_collections.c.resource_pk == Resource.id)
            .where(
                resource_collections.c.collection_pk == collection.id,
                Resource.deleted_at.is_(None),
            )
            .order_by(Resource.updated_at.desc())
        )
        result = await session.execute(query)
        return collection, list(result.scalars().all())

    async def upsert_collection(
        self,
        session: AsyncSession,
        user: User,
        request: UpsertCollectionRequest,
    ) -> Collection:
        """Create a collection, or update it when ``collection_id`` names an existing one."""
        if request.collection_id:
            existing = await self._find_collection(session, request.collection_id)
            if existing is not None:
                return await self.update_collection(session, user, request.collection_id, request)

        collection = Collection(
            collection_id=await self._new_collection_id(session, request.collection_id),
            user_id=user.id,
            title=request.title or DEFAULT_COLLECTION_TITLE,
            description=request.description,
            is_public=bool(request.is_public),
        )
        session.add(collection)
        await session.flush()
        logger.info(f"Created collection {collection.collection_id} for user {user.uid}")
        return collection

    async def update_collection(
        self,
        session: AsyncSession,
        user: User,
        collection_id: str,
        request: UpsertCollectionRequest,
    ) -> Collection:
        collection = await self._get_owned_collection(session, user, collection_id)
        if request.title is not None:
            collection.title = request.title
        if request.description is not None:
            collection.description = request.description
        if request.is_public is not None:
            collection.is_public = request.is_public
        collection.updated_at = utcnow()
        await session.flush()
        logger.info(f"Updated collection {collection_id}")
        return collection

    async def delete_collection(self, session: AsyncSession, user: User, collection_id: str) -> None:
        """Soft-delete a collection. Its resources are left untouched."""
        collection = await self._get_owned_collection(session, user, collection_id)
        collection.deleted_at = utcnow()
        await session.flush()
        logger.info(f"Deleted collection {collection_id}")

    async def _new_collection_id(self, session: AsyncSession, collection_id: Optional[str]) -> str:
        """Id for a collection about to be created; a soft-deleted id is never reused."""
        if not collection_id:
            return gen_collection_id()
        taken = await session.scalar(
            select(func.count(Collection.id)).where(Collection.collection_id == collection_id)
        )
        if taken:
            raise ResourceNotFoundError(f"Collection not found: {collection_id}")
        return collection_id

    async def _find_collection(self, session: AsyncSession, collection_id: str) -> Optional[Collection]:
        result = await session.execute(
            select(Collection).where(
                Collection.collection_id == collection_id,
                Collection.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def _get_collection(self, session: AsyncSession, collection_id: str) -> Collection:
        collection = await self._find_collection(session, collection_id)
        if collection is None:
            raise ResourceNotFoundError(f"Collection not found: {collection_id}")
        return collection

    async def _get_owned_collection(self, session: AsyncSession, user: User, collection_id: str) -> Collection:
        collection = await self._get_collection(session, collection_id)
        if collection.user_id != user.id:
            raise PermissionDeniedError(f"Collection {collection_id} is owned by another user")
        return collection

    # =========================================================================
    # RESOURCES - READ
    # =========================================================================

    async def list_resources(
        self,
        session: AsyncSession,
        user: User,
        resource_type: Optional[str] = None,
        collection_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> List[Resource]:
        query = select(Resource).where(Resource.user_id == user.id, Resource.deleted_at.is_(None))
        if resource_type:
            query = query.where(Resource.resource_type == resource_type)
        if collection_id:
            query = (
                query.join(resource_collections, resource_collections.c.resource_pk == Resource.id)
                .join(Collection, Collection.id == resource_collections.c.collection_pk)
                .where(Collection.collection_id == collection_id)
            )
        query = query.order_by(Resource.updated_at.desc()).offset((page - 1) * page_size).limit(page_size)

        result = await session.execute(query)
        return list(result.scalars().all())

    async def count_resources(self, session: AsyncSession, user: User) -> int:
        result = await session.execute(
            select(func.count(Resource.id)).where(
                Resource.user_id == user.id,
                Resource.deleted_at.is_(None),
            )
        )
        return result.scalar_one()

    async def get_resource_detail(
        self,
        session: AsyncSession,
        user: User,
        resource_id: str,
        with_doc: bool = False,
    ) -> ResourceDetail:
        """
        Get one resource, optionally hydrated with its document body.

        Raises:
            ResourceNotFoundError: Unknown or deleted resource
            PermissionDeniedError: Private resource of another user
        """
        resource = await self._get_resource(session, resource_id)
        if resource.user_id != user.id and not resource.is_public:
            raise PermissionDeniedError(f"No access to resource {resource_id}")

        detail = ResourceDetail(resource=resource, meta=load_meta(resource.resource_type, resource.meta))
        if with_doc:
            storage_key = resolve_storage_key(resource)
            if storage_key:
                try:
                    raw = await asyncio.to_thread(self.storage.download_data, storage_key)
                    detail.doc = raw.decode("utf-8")
                except S3Error as e:
                    logger.warning(f"Document {storage_key} of resource {resource_id} unavailable: {e}")
        return detail

    async def _find_resource(self, session: AsyncSession, resource_id: str) -> Optional[Resource]:
        result = await session.execute(
            select(Resource).where(
                Resource.resource_id == resource_id,
                Resource.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def _get_resource(self, session: AsyncSession, resource_id: str) -> Resource:
        resource = await self._find_resource(session, resource_id)
        if resource is None:
            raise ResourceNotFoundError(f"Resource not found: {resource_id}")
        return resource

    async def _get_owned_resource(self, session: AsyncSession, user: User, resource_id: str) -> Resource:
        resource = await self._get_resource(session, resource_id)
        if resource.user_id != user.id:
            raise PermissionDeniedError(f"Resource {resource_id} is owned by another user")
        return resource

    # =========================================================================
    # RESOURCES - WRITE
    # =========================================================================

    def validate_create_request(self, request: UpsertResourceRequest) -> ResourceData:
        """
        Check creation rules before anything is written.

        Raises:
            ResourceValidationError: Unknown type, or a weblink with neither url nor linkId
        """
        data = request.data or ResourceData()
        if request.resource_type == "weblink":
            if not data.url and not data.link_id:
                raise ResourceValidationError("Weblink resource requires a url or linkId")
        elif request.resource_type == "note":
            pass
        else:
            raise ResourceValidationError(f"Invalid resource type: {request.resource_type}")
        return data

    async def create_resource(
        self,
        session: AsyncSession,
        user: User,
        request: UpsertResourceRequest,
    ) -> Tuple[Resource, FinalizeResourcePayload]:
        """
        Persist a placeholder resource and build its ingestion payload.

        The row starts in ``processing``. Nothing is written when validation
        fails. The caller must commit before enqueuing the payload.
        """
        data = self.validate_create_request(request)

        if request.resource_type == "weblink":
            read_only = True if request.read_only is None else request.read_only
            title = request.title or data.title
        else:
            read_only = bool(request.read_only)
            title = request.title

        collection = await self._connect_or_create_collection(session, user, request)

        storage_key = request.storage_key or data.storage_key
        meta = build_meta(
            request.resource_type,
            {"url": data.url, "linkId": data.link_id, "title": title, "storageKey": storage_key},
        )
        resource = Resource(
            resource_id=gen_resource_id(),
            user_id=user.id,
            resource_type=request.resource_type,
            title=title or DEFAULT_RESOURCE_TITLE,
            meta=dump_meta(meta),
            storage_key=storage_key,
            index_status=IndexStatus.PROCESSING.value,
            is_public=bool(request.is_public),
            read_only=read_only,
        )
        resource.collections = [collection]
        session.add(resource)
        await session.flush()

        payload = FinalizeResourcePayload(
            resource_id=resource.resource_id,
            user_id=str(user.id),
            resource_type=resource.resource_type,
            collection_id=collection.collection_id,
            title=title,
            content=request.content,
            storage_key=storage_key,
            data=data,
        )
        logger.info(
            f"Created {resource.resource_type} resource {resource.resource_id} "
            f"in collection {collection.collection_id} for user {user.uid}"
        )
        return resource, payload

    async def _connect_or_create_collection(
        self,
        session: AsyncSession,
        user: User,
        request: UpsertResourceRequest,
    ) -> Collection:
        if request.collection_id:
            existing = await self._find_collection(session, request.collection_id)
            if existing is not None:
                if existing.user_id != user.id:
                    raise PermissionDeniedError(
                        f"Collection {request.collection_id} is owned by another user"
                    )
                return existing

        collection = Collection(
            collection_id=await self._new_collection_id(session, request.collection_id),
            user_id=user.id,
            title=request.collection_name or DEFAULT_COLLECTION_TITLE,
        )
        session.add(collection)
        await session.flush()
        return collection

    async def update_resource(
        self,
        session: AsyncSession,
        user: User,
        resource_id: str,
        request: UpsertResourceRequest,
    ) -> Resource:
        """
        Update title, visibility, meta or content of an owned resource.

        New content is written to the resource's storage key, or to the
        default ``resource/<id>`` key when it has none yet.
        """
        resource = await self._get_owned_resource(session, user, resource_id)

        meta = load_meta(resource.resource_type, resource.meta)
        if request.title is not None:
            resource.title = request.title
            meta.title = request.title
        if request.is_public is not None:
            resource.is_public = request.is_public
        if request.read_only is not None:
            resource.read_only = request.read_only
        if request.data is not None:
            updates = request.data.model_dump(by_alias=True, exclude_none=True)
            meta = build_meta(resource.resource_type, {**meta.model_dump(by_alias=True), **updates})

        if request.content is not None:
            storage_key = resolve_storage_key(resource) or resource_storage_key(resource.resource_id)
            await asyncio.to_thread(self.storage.upload_data, storage_key, request.content)
            resource.storage_key = storage_key
            resource.word_count = count_words(request.content)
            meta.storage_key = storage_key

        resource.meta = dump_meta(meta)
        resource.updated_at = utcnow()
        await session.flush()
        logger.info(f"Updated resource {resource_id}")
        return resource

    async def delete_resource(self, session: AsyncSession, user: User, resource_id: str) -> None:
        """Soft-delete an owned resource and drop its indexed chunks."""
        resource = await self._get_owned_resource(session, user, resource_id)
        resource.deleted_at = utcnow()
        await self.indexer.delete_resource_data(session, user.id, resource_id)
        await session.flush()
        logger.info(f"Deleted resource {resource_id}")

    # =========================================================================
    # INDEX STATUS
    # =========================================================================

    async def get_resource_for_ingestion(
        self,
        session: AsyncSession,
        resource_id: str,
        user_id: UUID,
    ) -> Optional[Resource]:
        result = await session.execute(
            select(Resource).where(
                Resource.resource_id == resource_id,
                Resource.user_id == user_id,
                Resource.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reopen_for_ingestion(self, session: AsyncSession, resource: Resource) -> None:
        """Move a settled resource back to processing for a new ingestion run."""
        check_reopen(resource.index_status)
        await session.execute(
            update(Resource)
            .where(Resource.id == resource.id, Resource.index_status == resource.index_status)
            .values(index_status=IndexStatus.PROCESSING.value, updated_at=utcnow())
        )
        logger.info(f"Reopened resource {resource.resource_id} ({resource.index_status} -> processing)")
        resource.index_status = IndexStatus.PROCESSING.value

    async def complete_ingestion(
        self,
        session: AsyncSession,
        resource_id: str,
        user_id: UUID,
        storage_key: str,
        word_count: int,
        meta: Union[WeblinkMeta, NoteMeta],
        title: Optional[str] = None,
    ) -> None:
        """
        Settle a processing resource as ``finish`` in a single UPDATE.

        Raises:
            InvalidStatusTransitionError: The row is not in processing
        """
        values = {
            "storage_key": storage_key,
            "word_count": word_count,
            "index_status": check_transition(IndexStatus.PROCESSING, IndexStatus.FINISH).value,
            "meta": dump_meta(meta),
            "updated_at": utcnow(),
        }
        if title:
            values["title"] = title

        result = await session.execute(
            update(Resource)
            .where(
                Resource.resource_id == resource_id,
                Resource.user_id == user_id,
                Resource.index_status == IndexStatus.PROCESSING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self._current_status(session, resource_id)
            raise InvalidStatusTransitionError(current or "missing", IndexStatus.FINISH.value)
        logger.info(f"Resource {resource_id} finished ({word_count} words, key={storage_key})")

    async def mark_ingestion_failed(self, session: AsyncSession, resource_id: str, user_id: UUID) -> bool:
        """
        Settle a processing resource as ``failed``.

        Returns:
            False when the row was not in processing (left unchanged)
        """
        result = await session.execute(
            update(Resource)
            .where(
                Resource.resource_id == resource_id,
                Resource.user_id == user_id,
                Resource.index_status == IndexStatus.PROCESSING.value,
            )
            .values(
                index_status=check_transition(IndexStatus.PROCESSING, IndexStatus.FAILED).value,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self._current_status(session, resource_id)
            logger.warning(f"Resource {resource_id} not marked failed: status is {current}")
            return False
        logger.info(f"Resource {resource_id} marked failed")
        return True

    async def _current_status(self, session: AsyncSession, resource_id: str) -> Optional[str]:
        result = await session.execute(
            select(Resource.index_status).where(Resource.resource_id == resource_id)
        )
        return result.scalar_one_or_none()


knowledge_service = KnowledgeService()
