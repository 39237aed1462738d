from __future__ import annotations

"""In-memory chunk store for local use and tests."""

import threading
from dataclasses import dataclass, field, replace
from typing import Iterable

from context_engine.chunkstore.base import (
    DocumentLocks,
    check_transition,
    parse_chunk_id,
    validate_chunks,
)
from context_engine.rag.errors import NotFound
from context_engine.rag.types import (
    Chunk,
    Document,
    ProcessingStatus,
    ProcessingSummary,
    utc_now,
)


@dataclass
class InMemoryChunkStore:
    """Document registry and chunk lists held in process memory.

    Each document's chunk list is replaced as a whole under the registry
    lock, so readers see either the previous list or the new one.
    """
    _documents: dict[str, Document] = field(default_factory=dict)
    _chunks: dict[str, tuple[Chunk, ...]] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)
    _document_locks: DocumentLocks = field(default_factory=DocumentLocks)

    @property
    def dimension(self) -> int | None:
        with self._lock:
            for chunks in self._chunks.values():
                if chunks:
                    return chunks[0].dimension
        return None

    def add_document(self, document: Document) -> Document:
        with self._lock:
            if document.document_id in self._documents:
                raise ValueError(f"Document already exists: {document.document_id}")
            self._documents[document.document_id] = document
            self._chunks[document.document_id] = ()
        return document

    def get_document(self, document_id: str) -> Document:
        with self._lock:
            document = self._documents.get(document_id)
        if document is None:
            raise NotFound("document", document_id)
        return document

    def documents(self) -> list[Document]:
        with self._lock:
            return sorted(self._documents.values(), key=lambda doc: doc.created_at)

    def set_status(
        self,
        document_id: str,
        status: ProcessingStatus,
        error: str | None = None,
        document_title: str | None = None,
    ) -> Document:
        with self._lock:
            current = self.get_document(document_id)
            check_transition(current, status)
            updated = replace(
                current,
                status=status,
                error=error if status == ProcessingStatus.FAILED else None,
                document_title=document_title or current.document_title,
                total_chunks=len(self._chunks.get(document_id, ())),
                updated_at=utc_now(),
            )
            self._documents[document_id] = updated
        return updated

    def remove_document(self, document_id: str) -> int:
        with self._document_locks.for_document(document_id):
            with self._lock:
                if document_id not in self._documents:
                    raise NotFound("document", document_id)
                del self._documents[document_id]
                removed = len(self._chunks.pop(document_id, ()))
        self._document_locks.discard(document_id)
        return removed

    def put(self, document_id: str, chunks: Iterable[Chunk]) -> int:
        """Replace all chunks of a document; repeating a put is a no-op."""
        candidates = list(chunks)
        with self._document_locks.for_document(document_id):
            with self._lock:
                if document_id not in self._documents:
                    raise NotFound("document", document_id)
                ordered, _ = validate_chunks(
                    document_id, candidates, self._dimension_excluding(document_id)
                )
                self._chunks[document_id] = ordered
                self._documents[document_id] = replace(
                    self._documents[document_id], total_chunks=len(ordered)
                )
        return len(ordered)

    def clear_chunks(self, document_id: str) -> int:
        with self._document_locks.for_document(document_id):
            with self._lock:
                if document_id not in self._documents:
                    raise NotFound("document", document_id)
                removed = len(self._chunks.get(document_id, ()))
                self._chunks[document_id] = ()
                self._documents[document_id] = replace(
                    self._documents[document_id], total_chunks=0
                )
        return removed

    def all_chunks(self) -> list[Chunk]:
        with self._lock:
            return [chunk for chunks in self._chunks.values() for chunk in chunks]

    def chunks_for_document(self, document_id: str) -> list[Chunk]:
        with self._lock:
            if document_id not in self._documents:
                raise NotFound("document", document_id)
            return list(self._chunks.get(document_id, ()))

    def get_chunk(self, chunk_id: str) -> Chunk:
        document_id, index = parse_chunk_id(chunk_id)
        with self._lock:
            for chunk in self._chunks.get(document_id, ()):
                if chunk.index == index:
                    return chunk
        raise NotFound("chunk", chunk_id)

    def chunk_count(self) -> int:
        with self._lock:
            return sum(len(chunks) for chunks in self._chunks.values())

    def snapshot(
        self, statuses: Iterable[ProcessingStatus] = (ProcessingStatus.COMPLETED,)
    ) -> list[tuple[Document, tuple[Chunk, ...]]]:
        """Return documents in the given states with their current chunk lists."""
        allowed = set(statuses)
        with self._lock:
            return [
                (document, self._chunks.get(document_id, ()))
                for document_id, document in self._documents.items()
                if document.status in allowed
            ]

    def processing_summary(self) -> ProcessingSummary:
        return ProcessingSummary.from_documents(self.documents())

    def stats(self) -> dict[str, int | str | None]:
        with self._lock:
            return {
                "backend": "memory",
                "documents": len(self._documents),
                "chunks": sum(len(chunks) for chunks in self._chunks.values()),
                "dimension": self.dimension,
            }

    def health(self) -> dict[str, str | bool]:
        return {"backend": "memory", "ok": True}

    def _dimension_excluding(self, document_id: str) -> int | None:
        with self._lock:
            for other_id, chunks in self._chunks.items():
                if other_id != document_id and chunks:
                    return chunks[0].dimension
        return None
