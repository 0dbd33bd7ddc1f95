# ============================================================================
# kbase/core/search/embedding_service.py
# ============================================================================
"""
Embedding Service - OpenAI-compatible embeddings for indexed chunks.

Embeddings are optional: when ``EMBEDDING_ENABLED`` is false or no API key is
configured, chunks are indexed without vectors.

Usage:
    from kbase.core.search.embedding_service import embedding_service

    if embedding_service.is_enabled:
        vectors = await embedding_service.get_embeddings_batch(["text a", "text b"])
"""

import logging
from typing import List, Optional

from openai import AsyncOpenAI

from kbase.config import settings

logger = logging.getLogger("kbase.search.embedding")

# ~4 chars per token; stays well below the 8191-token input limit
MAX_INPUT_CHARS = 8000
BATCH_SIZE = 50


class EmbeddingService:
    """Batch embedding generation through the OpenAI embeddings endpoint."""

    def __init__(self, model_name: Optional[str] = None):
        self._client: Optional[AsyncOpenAI] = None
        self.model_name = model_name or settings.embedding_model

    @property
    def is_enabled(self) -> bool:
        return settings.embedding_enabled and bool(settings.openai_api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY not set")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                max_retries=5,
            )
            logger.info(f"OpenAI client initialized for embeddings (model: {self.model_name})")
        return self._client

    async def get_embeddings_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts in order.

        Inputs are truncated to MAX_INPUT_CHARS and sent in batches of
        BATCH_SIZE. The SDK retries rate-limited requests itself.
        """
        client = self._get_client()
        cleaned = [(t[:MAX_INPUT_CHARS] if t.strip() else "empty") for t in texts]

        vectors: List[List[float]] = []
        for i in range(0, len(cleaned), BATCH_SIZE):
            batch = cleaned[i:i + BATCH_SIZE]
            response = await client.embeddings.create(model=self.model_name, input=batch)
            vectors.extend(item.embedding for item in response.data)

        logger.debug(f"Embedded {len(texts)} texts with {self.model_name}")
        return vectors


embedding_service = EmbeddingService()
