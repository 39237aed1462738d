from __future__ import annotations

"""Brute-force cosine similarity search over completed documents."""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Iterable, Sequence

from context_engine.chunkstore.base import ChunkStore
from context_engine.rag.errors import DimensionMismatch, EmptyIndex
from context_engine.rag.metrics import SEARCH_LATENCY
from context_engine.rag.types import ProcessingStatus, SearchResult


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity; zero-norm vectors score 0.0."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


@dataclass
class SimilaritySearch:
    """Linear scan of every chunk belonging to a completed document."""
    store: ChunkStore

    def search_vector(
        self,
        query_vector: Sequence[float],
        limit: int,
        active_document_id: str | None = None,
        document_ids: Iterable[str] | None = None,
    ) -> list[SearchResult]:
        """Return the top `limit` chunks by descending cosine score.

        `document_ids` restricts candidates to those documents. Equal scores
        order the active document first, then by chunk index, then by
        document ID.
        """
        if limit <= 0:
            return []
        start = time.monotonic()
        try:
            allowed = set(document_ids) if document_ids is not None else None
            candidates = [
                chunk
                for document, chunks in self.store.snapshot((ProcessingStatus.COMPLETED,))
                if allowed is None or document.document_id in allowed
                for chunk in chunks
            ]
            if not candidates:
                raise EmptyIndex("No completed documents with chunks to search")
            dimension = candidates[0].dimension
            if len(query_vector) != dimension:
                raise DimensionMismatch(expected=dimension, actual=len(query_vector))
            scored = [
                SearchResult(chunk=chunk, score=cosine_similarity(query_vector, chunk.embedding))
                for chunk in candidates
            ]
            scored.sort(
                key=lambda result: (
                    -result.score,
                    0 if result.chunk.document_id == active_document_id else 1,
                    result.chunk.index,
                    result.chunk.document_id,
                )
            )
            return scored[:limit]
        finally:
            SEARCH_LATENCY.observe(time.monotonic() - start)

    async def search(
        self,
        query_vector: Sequence[float],
        limit: int,
        active_document_id: str | None = None,
        document_ids: Iterable[str] | None = None,
    ) -> list[SearchResult]:
        """Run the scan in a worker thread."""
        return await asyncio.to_thread(
            self.search_vector,
            list(query_vector),
            limit,
            active_document_id,
            list(document_ids) if document_ids is not None else None,
        )
