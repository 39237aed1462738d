from __future__ import annotations

import pytest

from context_engine.chunkstore.inmemory import InMemoryChunkStore
from context_engine.rag.errors import DimensionMismatch, EmptyIndex
from context_engine.rag.search import SimilaritySearch, cosine_similarity
from context_engine.rag.types import Chunk, Document, ProcessingStatus


def _store_with(
    vectors_by_document: dict[str, list[tuple[float, ...]]],
    status: ProcessingStatus = ProcessingStatus.COMPLETED,
) -> InMemoryChunkStore:
    store = InMemoryChunkStore()
    for document_id, vectors in vectors_by_document.items():
        store.add_document(Document(document_id=document_id, title=document_id, source_path="x"))
        store.put(
            document_id,
            [
                Chunk(document_id=document_id, index=idx, text=f"text {idx}", embedding=vector)
                for idx, vector in enumerate(vectors)
            ],
        )
        store.set_status(document_id, ProcessingStatus.PROCESSING)
        store.set_status(document_id, status, error="boom" if status == ProcessingStatus.FAILED else None)
    return store


def test_cosine_similarity_handles_zero_vectors() -> None:
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([2.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)


def test_search_ranks_by_cosine_score() -> None:
    store = _store_with({"doc": [(1.0, 0.0), (0.0, 1.0), (0.7, 0.7)]})

    results = SimilaritySearch(store).search_vector([1.0, 0.0], limit=2)

    assert [result.chunk.index for result in results] == [0, 2]
    assert results[0].score == pytest.approx(1.0)
    assert results[1].score == pytest.approx(0.7071, abs=1e-3)


def test_equal_scores_break_ties_by_index_then_active_document() -> None:
    store = _store_with(
        {
            "a": [(1.0, 0.0), (1.0, 0.0)],
            "b": [(1.0, 0.0)],
        }
    )
    search = SimilaritySearch(store)

    plain = search.search_vector([1.0, 0.0], limit=3)
    assert [result.chunk.chunk_id for result in plain] == ["a_0", "b_0", "a_1"]

    preferred = search.search_vector([1.0, 0.0], limit=3, active_document_id="b")
    assert [result.chunk.chunk_id for result in preferred] == ["b_0", "a_0", "a_1"]


def test_limit_edges() -> None:
    store = _store_with({"doc": [(1.0, 0.0), (0.0, 1.0)]})
    search = SimilaritySearch(store)

    assert search.search_vector([1.0, 0.0], limit=0) == []
    assert len(search.search_vector([1.0, 0.0], limit=10)) == 2


def test_failed_documents_are_not_searchable() -> None:
    store = _store_with({"doc": [(1.0, 0.0)]}, status=ProcessingStatus.FAILED)

    with pytest.raises(EmptyIndex):
        SimilaritySearch(store).search_vector([1.0, 0.0], limit=3)


def test_empty_store_raises_empty_index() -> None:
    with pytest.raises(EmptyIndex):
        SimilaritySearch(InMemoryChunkStore()).search_vector([1.0], limit=1)


def test_query_dimension_mismatch_fails_fast() -> None:
    store = _store_with({"doc": [(1.0, 0.0)]})

    with pytest.raises(DimensionMismatch) as excinfo:
        SimilaritySearch(store).search_vector([1.0, 0.0, 0.0], limit=1)

    assert excinfo.value.expected == 2
    assert excinfo.value.actual == 3


@pytest.mark.anyio
async def test_async_search_matches_sync_scan() -> None:
    store = _store_with({"doc": [(1.0, 0.0), (0.0, 1.0), (0.7, 0.7)]})
    search = SimilaritySearch(store)

    results = await search.search([0.0, 1.0], limit=1)

    assert results[0].chunk.index == 1


def test_search_restricted_to_document_ids() -> None:
    store = _store_with({"a": [(1.0, 0.0)], "b": [(0.9, 0.1)], "c": [(0.8, 0.2)]})
    search = SimilaritySearch(store)

    results = search.search_vector([1.0, 0.0], limit=5, document_ids=["b", "c"])

    assert [result.chunk.document_id for result in results] == ["b", "c"]
    with pytest.raises(EmptyIndex):
        search.search_vector([1.0, 0.0], limit=5, document_ids=["missing"])
