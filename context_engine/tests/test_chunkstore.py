from __future__ import annotations

import pytest

from context_engine.chunkstore.inmemory import InMemoryChunkStore
from context_engine.chunkstore.sql import SQLChunkStore
from context_engine.rag.errors import DimensionMismatch, InvalidTransition, NotFound
from context_engine.rag.types import BoundingBox, Chunk, Document, ProcessingStatus


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "sql":
        return SQLChunkStore(f"sqlite:///{tmp_path / 'chunks.db'}")
    return InMemoryChunkStore()


def _chunks(document_id: str, count: int, dimension: int = 2) -> list[Chunk]:
    return [
        Chunk(
            document_id=document_id,
            index=idx,
            text=f"chunk {idx} of {document_id}",
            embedding=tuple(float(idx + 1) for _ in range(dimension)),
            bounding_boxes=(BoundingBox(idx + 1, 10.0, 700.0, 200.0, 650.0),),
        )
        for idx in range(count)
    ]


def _complete(store, document_id: str) -> None:
    store.set_status(document_id, ProcessingStatus.PROCESSING)
    store.set_status(document_id, ProcessingStatus.COMPLETED)


def test_put_is_idempotent(store) -> None:
    store.add_document(Document(document_id="doc", title="Doc", source_path="doc.pdf"))
    chunks = _chunks("doc", 3)

    assert store.put("doc", chunks) == 3
    first = store.chunks_for_document("doc")
    assert store.put("doc", chunks) == 3

    assert store.chunks_for_document("doc") == first
    assert store.chunk_count() == 3
    assert store.get_document("doc").total_chunks == 3


def test_put_replaces_previous_chunks(store) -> None:
    store.add_document(Document(document_id="doc", title="Doc", source_path="doc.pdf"))
    store.put("doc", _chunks("doc", 3))
    store.put("doc", _chunks("doc", 2))

    chunks = store.chunks_for_document("doc")
    assert [chunk.chunk_id for chunk in chunks] == ["doc_0", "doc_1"]
    assert store.get_document("doc").total_chunks == 2


def test_put_unknown_document_raises_not_found(store) -> None:
    with pytest.raises(NotFound):
        store.put("missing", _chunks("missing", 1))


def test_put_rejects_foreign_and_empty_chunks(store) -> None:
    store.add_document(Document(document_id="doc", title="Doc", source_path="doc.pdf"))
    with pytest.raises(ValueError):
        store.put("doc", _chunks("other", 1))
    blank = Chunk(document_id="doc", index=0, text="   ", embedding=(1.0, 0.0))
    with pytest.raises(ValueError):
        store.put("doc", [blank])
    assert store.chunks_for_document("doc") == []


def test_dimension_is_fixed_across_documents(store) -> None:
    store.add_document(Document(document_id="a", title="A", source_path="a.pdf"))
    store.add_document(Document(document_id="b", title="B", source_path="b.pdf"))
    store.put("a", _chunks("a", 2, dimension=2))

    with pytest.raises(DimensionMismatch) as excinfo:
        store.put("b", _chunks("b", 1, dimension=3))

    assert excinfo.value.expected == 2
    assert excinfo.value.actual == 3
    assert store.chunks_for_document("b") == []
    assert store.dimension == 2


def test_status_transitions_are_validated(store) -> None:
    store.add_document(Document(document_id="doc", title="Doc", source_path="doc.pdf"))
    with pytest.raises(InvalidTransition):
        store.set_status("doc", ProcessingStatus.COMPLETED)

    store.set_status("doc", ProcessingStatus.PROCESSING)
    failed = store.set_status("doc", ProcessingStatus.FAILED, error="boom")
    assert failed.status == ProcessingStatus.FAILED
    assert failed.error == "boom"

    retried = store.set_status("doc", ProcessingStatus.PROCESSING)
    assert retried.error is None


def test_snapshot_only_includes_requested_statuses(store) -> None:
    store.add_document(Document(document_id="done", title="Done", source_path="d.pdf"))
    store.add_document(Document(document_id="todo", title="Todo", source_path="t.pdf"))
    store.put("done", _chunks("done", 2))
    _complete(store, "done")

    snapshot = store.snapshot()

    assert [document.document_id for document, _ in snapshot] == ["done"]
    assert len(snapshot[0][1]) == 2


def test_get_chunk_and_remove_document(store) -> None:
    store.add_document(Document(document_id="doc", title="Doc", source_path="doc.pdf"))
    store.put("doc", _chunks("doc", 2))

    chunk = store.get_chunk("doc_1")
    assert chunk.index == 1
    assert chunk.page_numbers == [2]
    with pytest.raises(NotFound):
        store.get_chunk("doc_9")
    with pytest.raises(NotFound):
        store.get_chunk("not-a-chunk-id")

    assert store.remove_document("doc") == 2
    with pytest.raises(NotFound):
        store.get_document("doc")
    with pytest.raises(NotFound):
        store.remove_document("doc")
    assert store.chunk_count() == 0


def test_processing_summary_and_stats(store) -> None:
    for document_id in ("a", "b", "c"):
        store.add_document(
            Document(document_id=document_id, title=document_id, source_path=f"{document_id}.pdf")
        )
    store.put("a", _chunks("a", 1))
    _complete(store, "a")
    store.set_status("b", ProcessingStatus.PROCESSING)

    summary = store.processing_summary()
    assert (summary.total, summary.completed, summary.processing, summary.pending) == (3, 1, 1, 1)
    assert summary.failed == 0

    stats = store.stats()
    assert stats["documents"] == 3
    assert stats["chunks"] == 1
    assert store.health()["ok"] is True


def test_sql_store_persists_between_instances(tmp_path) -> None:
    uri = f"sqlite:///{tmp_path / 'durable.db'}"
    first = SQLChunkStore(uri)
    first.add_document(Document(document_id="doc", title="Doc", source_path="doc.pdf"))
    first.put("doc", _chunks("doc", 2))
    _complete(first, "doc")

    second = SQLChunkStore(uri)

    document = second.get_document("doc")
    assert document.status == ProcessingStatus.COMPLETED
    assert document.total_chunks == 2
    assert second.chunks_for_document("doc") == first.chunks_for_document("doc")


def test_all_chunks_spans_every_document(store) -> None:
    store.add_document(Document(document_id="a", title="A", source_path="a.pdf"))
    store.add_document(Document(document_id="b", title="B", source_path="b.pdf"))
    store.put("a", _chunks("a", 2))
    store.put("b", _chunks("b", 1))

    chunk_ids = sorted(chunk.chunk_id for chunk in store.all_chunks())

    assert chunk_ids == ["a_0", "a_1", "b_0"]
    store.clear_chunks("a")
    assert [chunk.chunk_id for chunk in store.all_chunks()] == ["b_0"]
