from __future__ import annotations

"""Assemble explicit and retrieved context for one chat turn."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from context_engine.chunkstore.base import ChunkStore
from context_engine.loaders.chunking import normalize_text
from context_engine.rag.embeddings import EmbeddingProvider, embed_text
from context_engine.rag.errors import DimensionMismatch, EmptyIndex, NotFound, SearchTimeout
from context_engine.rag.metrics import RETRIEVAL_DEGRADED
from context_engine.rag.render import render_context
from context_engine.rag.search import SimilaritySearch
from context_engine.rag.tokens import TokenCounter, content_checksum
from context_engine.rag.types import (
    ChatSession,
    ContextBundle,
    ContextKind,
    ExplicitContext,
    RetrievedContext,
    SearchResult,
)

logger = logging.getLogger(__name__)


def merge_explicit(*groups: Iterable[ExplicitContext]) -> list[ExplicitContext]:
    """Concatenate explicit contexts in order, keeping the first of each ID."""
    merged: list[ExplicitContext] = []
    seen: set[str] = set()
    for group in groups:
        for context in group:
            if context.context_id in seen:
                continue
            seen.add(context.context_id)
            merged.append(context)
    return merged


def overlaps(explicit: ExplicitContext, retrieved: RetrievedContext) -> bool:
    """Return True when the retrieved chunk repeats what the explicit context covers."""
    if explicit.context_id == retrieved.context_id:
        return True
    if explicit.document_id != retrieved.document_id:
        return False
    if explicit.kind == ContextKind.DOCUMENT:
        return True
    shared_pages = set(explicit.page_numbers) & set(retrieved.page_numbers)
    if not shared_pages:
        return False
    if explicit.kind == ContextKind.PAGE_RANGE:
        return True
    if explicit.kind == ContextKind.TEXT_SELECTION:
        selected = normalize_text(explicit.content).lower()
        chunk_text = normalize_text(retrieved.content).lower()
        if selected and chunk_text and (selected in chunk_text or chunk_text in selected):
            return True
        return any(
            bound.intersects(box)
            for bound in explicit.selection_bounds
            for box in retrieved.bounding_boxes
        )
    return False


def apply_budget(
    explicit: list[ExplicitContext],
    retrieved: list[RetrievedContext],
    token_limit: int | None,
) -> list[RetrievedContext]:
    """Drop lowest-score retrieved contexts until the total fits token_limit.

    Explicit contexts are never dropped, so the result may still exceed the
    limit when explicit context alone does.
    """
    kept = sorted(retrieved, key=lambda c: (-c.score, c.chunk_index, c.document_id))
    if token_limit is None:
        return kept
    total = sum(c.token_count for c in explicit) + sum(c.token_count for c in kept)
    while kept and total > token_limit:
        total -= kept.pop().token_count
    return kept


@dataclass
class ContextAssembler:
    """Build a deduplicated, budgeted ContextBundle and its rendered text."""
    store: ChunkStore
    search: SimilaritySearch
    embedder: EmbeddingProvider
    counter: TokenCounter
    top_k: int = 5
    token_limit: int | None = 8000
    timeout: float | None = 10.0

    async def build(
        self,
        session: ChatSession,
        user_message: str,
        explicit_contexts: Iterable[ExplicitContext] = (),
        active_document_id: str | None = None,
        timeout: float | None = None,
    ) -> tuple[ContextBundle, str]:
        explicit = merge_explicit(session.explicit_contexts(), explicit_contexts)
        status, error, retrieved = "skipped", None, []
        if user_message.strip() and self.top_k > 0:
            status, error, retrieved = await self._retrieve(
                user_message,
                active_document_id,
                timeout if timeout is not None else self.timeout,
            )
        candidates = [r for r in retrieved if not any(overlaps(e, r) for e in explicit)]
        kept = apply_budget(explicit, candidates, self.token_limit)
        bundle = ContextBundle(
            session_id=session.session_id,
            contexts=tuple(explicit) + tuple(kept),
            active_document_id=active_document_id,
            retrieval_status=status,
            retrieval_error=error,
            token_budget=self.token_limit,
        )
        logger.info(
            "context_built",
            extra={
                "session_id": session.session_id,
                "explicit": len(explicit),
                "retrieved": len(kept),
                "dropped": len(retrieved) - len(kept),
                "tokens": bundle.token_count,
                "retrieval_status": status,
            },
        )
        return bundle, render_context(bundle, user_message)

    async def _retrieve(
        self,
        user_message: str,
        active_document_id: str | None,
        timeout: float | None,
    ) -> tuple[str, str | None, list[RetrievedContext]]:
        try:
            results = await asyncio.wait_for(
                self._search(user_message, active_document_id), timeout
            )
        except DimensionMismatch:
            raise
        except asyncio.TimeoutError:
            return self._degraded("timeout", SearchTimeout(timeout or 0.0))
        except EmptyIndex as exc:
            return self._degraded("empty_index", exc)
        except Exception as exc:
            return self._degraded("provider_error", exc)
        contexts = await asyncio.to_thread(self._to_contexts, results)
        return "ok", None, contexts

    async def _search(
        self, user_message: str, active_document_id: str | None
    ) -> list[SearchResult]:
        vector = await embed_text(self.embedder, user_message)
        return await self.search.search(vector, self.top_k, active_document_id)

    def _degraded(
        self, reason: str, exc: Exception
    ) -> tuple[str, str | None, list[RetrievedContext]]:
        RETRIEVAL_DEGRADED.labels(reason).inc()
        logger.warning(
            "context_retrieval_degraded",
            extra={"reason": reason, "error": f"{type(exc).__name__}: {exc}"},
        )
        return reason, str(exc) or type(exc).__name__, []

    def _to_contexts(self, results: list[SearchResult]) -> list[RetrievedContext]:
        titles: dict[str, str] = {}
        contexts: list[RetrievedContext] = []
        for result in results:
            chunk = result.chunk
            if chunk.document_id not in titles:
                try:
                    titles[chunk.document_id] = self.store.get_document(
                        chunk.document_id
                    ).display_title
                except NotFound:
                    titles[chunk.document_id] = chunk.document_id
            contexts.append(
                RetrievedContext(
                    context_id=chunk.chunk_id,
                    document_id=chunk.document_id,
                    document_title=titles[chunk.document_id],
                    chunk_index=chunk.index,
                    content=chunk.text,
                    token_count=self.counter.count(chunk.text),
                    checksum=content_checksum(chunk.text),
                    score=result.score,
                    page_numbers=tuple(chunk.page_numbers),
                    bounding_boxes=chunk.bounding_boxes,
                )
            )
        return contexts
