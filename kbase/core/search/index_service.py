# ============================================================================
# kbase/core/search/index_service.py
# ============================================================================
"""
Index Service - writes resource content into the per-user search index.

Indexing is split in two steps so the expensive part (chunking, embedding)
runs before any row is written:

    chunks = await index_service.index_content(content, metadata)
    await index_service.save_for_user(session, user_id, chunks)

Saving replaces whatever was indexed earlier for the same resource, so a
re-ingested resource never ends up with duplicate chunks.

Usage:
    from kbase.core.search.index_service import index_service, ChunkMetadata

    meta = ChunkMetadata(resource_id="r-1", url=url, title=title, collection_id="cl-1")
    chunks = await index_service.index_content(markdown, meta)
    await index_service.save_for_user(session, user.id, chunks)

    # On resource deletion
    await index_service.delete_resource_data(session, user.id, "r-1")
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.core.database.models import SearchChunk

from .chunking_service import ChunkingService, chunking_service
from .embedding_service import EmbeddingService, embedding_service

logger = logging.getLogger("kbase.search.index")


@dataclass
class ChunkMetadata:
    """Metadata attached to every chunk of one resource."""

    resource_id: str
    url: Optional[str] = None
    title: Optional[str] = None
    collection_id: Optional[str] = None


@dataclass
class IndexedChunk:
    """Chunk handle produced by index_content and consumed by save_for_user."""

    content: str
    chunk_index: int
    metadata: ChunkMetadata
    embedding: Optional[List[float]] = field(default=None, repr=False)


class IndexService:
    """Per-user chunk index stored in the search_chunks table."""

    def __init__(
        self,
        chunker: Optional[ChunkingService] = None,
        embedder: Optional[EmbeddingService] = None,
    ):
        self.chunker = chunker or chunking_service
        self.embedder = embedder or embedding_service

    async def index_content(self, content: str, metadata: ChunkMetadata) -> List[IndexedChunk]:
        """
        Chunk (and, when enabled, embed) content.

        Returns:
            Chunk handles; empty for blank content
        """
        pieces = self.chunker.chunk_document(content, title=metadata.title)
        if not pieces:
            return []

        embeddings: List[Optional[List[float]]] = [None] * len(pieces)
        if self.embedder.is_enabled:
            embeddings = await self.embedder.get_embeddings_batch([p.content for p in pieces])
        else:
            logger.debug("Embeddings disabled, indexing chunks as text only")

        return [
            IndexedChunk(content=p.content, chunk_index=p.chunk_index, metadata=metadata, embedding=vector)
            for p, vector in zip(pieces, embeddings)
        ]

    async def save_for_user(self, session: AsyncSession, user_id: UUID, chunks: List[IndexedChunk]) -> int:
        """
        Persist chunks for a user, replacing earlier chunks of the same resources.

        Returns:
            Number of chunks written
        """
        if not chunks:
            return 0

        for resource_id in {c.metadata.resource_id for c in chunks}:
            await self.delete_resource_data(session, user_id, resource_id)

        session.add_all(
            SearchChunk(
                user_id=user_id,
                resource_id=c.metadata.resource_id,
                collection_id=c.metadata.collection_id,
                chunk_index=c.chunk_index,
                title=c.metadata.title,
                url=c.metadata.url,
                content=c.content,
                embedding=c.embedding,
            )
            for c in chunks
        )
        await session.flush()
        logger.info(f"Saved {len(chunks)} chunks for user {user_id}")
        return len(chunks)

    async def delete_resource_data(self, session: AsyncSession, user_id: UUID, resource_id: str) -> int:
        """Remove a user's indexed chunks for one resource. Returns rows deleted."""
        result = await session.execute(
            delete(SearchChunk).where(
                SearchChunk.user_id == user_id,
                SearchChunk.resource_id == resource_id,
            )
        )
        if result.rowcount:
            logger.info(f"Deleted {result.rowcount} chunks of resource {resource_id} for user {user_id}")
        return result.rowcount or 0


index_service = IndexService()
