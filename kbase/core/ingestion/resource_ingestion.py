# ============================================================================
# kbase/core/ingestion/resource_ingestion.py
# ============================================================================
"""
Resource Ingestion - turns a freshly created resource into indexed content.

Runs on the worker, once per delivery of a ``FinalizeResourcePayload``:

    1. Resolve content
       - linkId      -> reuse the weblink's parsed document key
       - storage key -> download from the blob store
       - url         -> crawl through the reader (only without inline content)
       - otherwise   -> inline content as supplied
       Content that did not come from the blob store is uploaded to
       ``resource/<resourceId>``.
    2. Clean, chunk and index non-empty content for the owning user
    3. Settle the row as ``finish`` in one UPDATE (storage key, word count,
       normalized meta)

Any failure (including a timeout on an external call) rolls back, settles the
row as ``failed`` and re-raises so the task queue can retry. Nothing in here
retries on its own.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.config import settings
from kbase.core.database.models import User, Weblink
from kbase.core.exceptions import IngestionTimeoutError
from kbase.core.knowledge.knowledge_service import KnowledgeService, knowledge_service
from kbase.core.knowledge.meta import build_meta
from kbase.core.knowledge.schemas import FinalizeResourcePayload
from kbase.core.knowledge.status import IndexStatus
from kbase.core.search.index_service import ChunkMetadata, IndexService, index_service
from kbase.core.storage.minio_service import MinIOService, get_minio_service
from kbase.core.utils.ids import resource_storage_key
from kbase.core.utils.text_utils import clean_markdown_for_ingest, count_words

from .reader_client import ReaderClient, reader_client

logger = logging.getLogger("kbase.ingestion")

T = TypeVar("T")


class ResourceIngestionService:
    """Content resolution, indexing and final status write for one resource."""

    def __init__(
        self,
        reader: Optional[ReaderClient] = None,
        storage: Optional[MinIOService] = None,
        indexer: Optional[IndexService] = None,
        knowledge: Optional[KnowledgeService] = None,
    ):
        self.reader = reader or reader_client
        self._storage = storage
        self.indexer = indexer or index_service
        self.knowledge = knowledge or knowledge_service

    @property
    def storage(self) -> MinIOService:
        if self._storage is None:
            self._storage = get_minio_service()
        return self._storage

    async def _bounded(self, awaitable: Awaitable[T], timeout: float, what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise IngestionTimeoutError(f"{what} timed out after {timeout}s")

    async def finalize_resource(self, session: AsyncSession, payload: FinalizeResourcePayload) -> None:
        """
        Entry point for the worker.

        Skips (with a warning) when the owner or the resource is gone. A
        redelivered task on a settled resource reopens it first, and the
        reopen is committed so the failure path always starts from
        ``processing``.
        """
        user = await session.get(User, UUID(payload.user_id))
        if user is None:
            logger.warning(f"User {payload.user_id} not found, skipping resource {payload.resource_id}")
            return

        resource = await self.knowledge.get_resource_for_ingestion(session, payload.resource_id, user.id)
        if resource is None:
            logger.warning(f"Resource {payload.resource_id} not found or deleted, skipping ingestion")
            return

        user_id = user.id
        if resource.index_status != IndexStatus.PROCESSING.value:
            await self.knowledge.reopen_for_ingestion(session, resource)
            await session.commit()

        try:
            await self.ingest(session, user, payload)
        except Exception as e:
            logger.error(f"Ingestion of resource {payload.resource_id} failed: {e}", exc_info=True)
            await session.rollback()
            await self.knowledge.mark_ingestion_failed(session, payload.resource_id, user_id)
            await session.commit()
            raise

    async def ingest(self, session: AsyncSession, user: User, payload: FinalizeResourcePayload) -> None:
        data = payload.data
        title = payload.title
        storage_key = payload.storage_key or data.storage_key
        content = payload.content or ""

        if data.link_id:
            weblink = await session.scalar(select(Weblink).where(Weblink.link_id == data.link_id))
            if weblink is None or not weblink.parsed_doc_storage_key:
                logger.warning(f"Weblink {data.link_id} not found or unparsed, resolving {payload.resource_id} without it")
            else:
                storage_key = weblink.parsed_doc_storage_key
                title = title or weblink.title

        if storage_key:
            raw = await self._bounded(
                asyncio.to_thread(self.storage.download_data, storage_key),
                settings.storage_timeout,
                f"Download of {storage_key}",
            )
            content = raw.decode("utf-8")
        else:
            if not content and data.url and payload.resource_type == "weblink":
                crawled = await self._bounded(
                    self.reader.crawl(data.url),
                    settings.reader_timeout,
                    f"Crawl of {data.url}",
                )
                content = crawled.content
                title = title or crawled.title or None

            storage_key = resource_storage_key(payload.resource_id)
            await self._bounded(
                asyncio.to_thread(self.storage.upload_data, storage_key, content),
                settings.storage_timeout,
                f"Upload of {storage_key}",
            )

        chunks = []
        if content:
            metadata = ChunkMetadata(
                resource_id=payload.resource_id,
                url=data.url,
                title=title,
                collection_id=payload.collection_id,
            )
            chunks = await self._bounded(
                self.indexer.index_content(clean_markdown_for_ingest(content), metadata),
                settings.index_timeout,
                f"Indexing of {payload.resource_id}",
            )
        if chunks:
            await self.indexer.save_for_user(session, user.id, chunks)
        else:
            logger.info(f"Resource {payload.resource_id} has nothing to index, clearing earlier chunks")
            await self.indexer.delete_resource_data(session, user.id, payload.resource_id)

        meta = build_meta(payload.resource_type, {"url": data.url, "title": title, "storageKey": storage_key})
        await self.knowledge.complete_ingestion(
            session,
            payload.resource_id,
            user.id,
            storage_key=storage_key,
            word_count=count_words(content),
            meta=meta,
            title=None if payload.title else title,
        )


resource_ingestion_service = ResourceIngestionService()
