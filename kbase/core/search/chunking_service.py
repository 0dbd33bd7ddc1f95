# ============================================================================
# kbase/core/search/chunking_service.py
# ============================================================================
"""
Chunking Service - splits resource content into indexable chunks.

Chunking Strategy:
    1. Split on paragraph boundaries (blank lines)
    2. Merge consecutive paragraphs up to the target chunk size
    3. Split oversized paragraphs at sentence, then word, boundaries
    4. Prefix each chunk after the first with the tail of its predecessor

Usage:
    from kbase.core.search.chunking_service import chunking_service

    chunks = chunking_service.chunk_document(content, title="Page title")
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from kbase.config import settings

logger = logging.getLogger("kbase.search.chunking")

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?。！？])\s+")


@dataclass
class DocumentChunk:
    """
    A chunk of a resource ready for indexing.

    Attributes:
        content: Text of this chunk (including overlap prefix)
        chunk_index: Zero-based position in the document
        title: Title of the parent document
    """

    content: str
    chunk_index: int
    title: Optional[str] = None


class ChunkingService:
    """Paragraph-aware splitter with overlap between consecutive chunks."""

    def __init__(
        self,
        max_chunk_size: Optional[int] = None,
        min_chunk_size: Optional[int] = None,
        overlap_size: Optional[int] = None,
    ):
        self.max_chunk_size = max_chunk_size or settings.chunk_max_size
        self.min_chunk_size = min_chunk_size or settings.chunk_min_size
        self.overlap_size = settings.chunk_overlap if overlap_size is None else overlap_size

    def chunk_document(self, content: str, title: Optional[str] = None) -> List[DocumentChunk]:
        """
        Split a document into chunks.

        Returns an empty list for blank content. A document shorter than
        ``min_chunk_size`` still yields a single chunk.
        """
        if not content or not content.strip():
            return []

        paragraphs = self._split_into_paragraphs(self._normalize(content))
        pieces = self._merge(paragraphs)
        if len(pieces) > 1 and self.overlap_size > 0:
            pieces = self._with_overlap(pieces)

        chunks = [DocumentChunk(content=p, chunk_index=i, title=title) for i, p in enumerate(pieces)]
        logger.debug(f"Created {len(chunks)} chunks from {len(content)} chars")
        return chunks

    def _normalize(self, content: str) -> str:
        content = content.replace("\r\n", "\n").replace("\r", "\n")
        content = re.sub(r"\n{3,}", "\n\n", content)
        content = re.sub(r"[ \t]+", " ", content)
        return content.strip()

    def _split_into_paragraphs(self, content: str) -> List[str]:
        return [p.strip() for p in content.split("\n\n") if p.strip()]

    def _split_oversized(self, paragraph: str) -> List[str]:
        """Break one paragraph larger than max_chunk_size into sentence/word runs."""
        units: List[str] = []
        for sentence in _SENTENCE_BOUNDARY.split(paragraph):
            if len(sentence) <= self.max_chunk_size:
                units.append(sentence)
            else:
                units.extend(sentence.split())

        segments: List[str] = []
        current = ""
        for unit in units:
            candidate = f"{current} {unit}" if current else unit
            if len(candidate) <= self.max_chunk_size:
                current = candidate
                continue
            if current:
                segments.append(current)
            # A single word longer than the limit is hard-cut
            while len(unit) > self.max_chunk_size:
                segments.append(unit[: self.max_chunk_size])
                unit = unit[self.max_chunk_size:]
            current = unit
        if current:
            segments.append(current)
        return segments

    def _merge(self, paragraphs: List[str]) -> List[str]:
        pieces: List[str] = []
        current = ""

        def flush():
            nonlocal current
            if current and (len(current) >= self.min_chunk_size or not pieces):
                pieces.append(current)
            elif current:
                # Too small to stand alone: fold into the previous piece
                pieces[-1] = f"{pieces[-1]}\n\n{current}"
            current = ""

        for paragraph in paragraphs:
            if len(paragraph) > self.max_chunk_size:
                flush()
                pieces.extend(self._split_oversized(paragraph))
            elif current and len(current) + len(paragraph) + 2 > self.max_chunk_size:
                flush()
                current = paragraph
            else:
                current = f"{current}\n\n{paragraph}" if current else paragraph
        flush()
        return pieces

    def _with_overlap(self, pieces: List[str]) -> List[str]:
        result = [pieces[0]]
        for previous, piece in zip(pieces, pieces[1:]):
            tail = previous[-self.overlap_size:]
            if len(previous) > self.overlap_size:
                # Start the overlap on a word boundary
                space = tail.find(" ")
                if space > 0:
                    tail = tail[space + 1:]
            result.append(f"{tail} {piece}".strip())
        return result


# Global service instance with default settings
chunking_service = ChunkingService()
