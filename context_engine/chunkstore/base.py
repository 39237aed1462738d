from __future__ import annotations

"""Chunk store contract and helpers shared by store backends."""

import threading
from typing import Iterable, Protocol

from context_engine.rag.errors import DimensionMismatch, InvalidTransition, NotFound
from context_engine.rag.types import Chunk, Document, ProcessingStatus, ProcessingSummary


class ChunkStoreError(RuntimeError):
    """Raised when chunk persistence fails."""
    pass


class ChunkStore(Protocol):
    """Document registry plus ordered chunk lists keyed by document ID."""

    @property
    def dimension(self) -> int | None:
        ...

    def add_document(self, document: Document) -> Document:
        ...

    def get_document(self, document_id: str) -> Document:
        ...

    def documents(self) -> list[Document]:
        ...

    def set_status(
        self,
        document_id: str,
        status: ProcessingStatus,
        error: str | None = None,
        document_title: str | None = None,
    ) -> Document:
        ...

    def remove_document(self, document_id: str) -> int:
        ...

    def put(self, document_id: str, chunks: Iterable[Chunk]) -> int:
        ...

    def clear_chunks(self, document_id: str) -> int:
        ...

    def all_chunks(self) -> list[Chunk]:
        ...

    def chunks_for_document(self, document_id: str) -> list[Chunk]:
        ...

    def get_chunk(self, chunk_id: str) -> Chunk:
        ...

    def chunk_count(self) -> int:
        ...

    def snapshot(
        self, statuses: Iterable[ProcessingStatus] = (ProcessingStatus.COMPLETED,)
    ) -> list[tuple[Document, tuple[Chunk, ...]]]:
        ...

    def processing_summary(self) -> ProcessingSummary:
        ...

    def stats(self) -> dict[str, int | str | None]:
        ...

    def health(self) -> dict[str, str | bool]:
        ...


class DocumentLocks:
    """Exclusive lock per document ID for chunk replacement."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def for_document(self, document_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[document_id] = lock
            return lock

    def discard(self, document_id: str) -> None:
        with self._guard:
            self._locks.pop(document_id, None)


def validate_chunks(
    document_id: str, chunks: Iterable[Chunk], dimension: int | None
) -> tuple[tuple[Chunk, ...], int | None]:
    """Check ownership, text and embedding dimension; return ordered chunks.

    ``dimension`` is the dimension already fixed by other documents, if any.
    """
    ordered = tuple(sorted(chunks, key=lambda chunk: chunk.index))
    seen: set[int] = set()
    resolved = dimension
    for chunk in ordered:
        if chunk.document_id != document_id:
            raise ValueError(
                f"Chunk {chunk.chunk_id} belongs to {chunk.document_id}, not {document_id}"
            )
        if chunk.index in seen:
            raise ValueError(f"Duplicate chunk index {chunk.index} for {document_id}")
        seen.add(chunk.index)
        if not chunk.text.strip():
            raise ValueError(f"Chunk {chunk.chunk_id} has empty text")
        if chunk.dimension == 0:
            raise ValueError(f"Chunk {chunk.chunk_id} has an empty embedding")
        if resolved is None:
            resolved = chunk.dimension
        elif chunk.dimension != resolved:
            raise DimensionMismatch(expected=resolved, actual=chunk.dimension)
    return ordered, resolved


def check_transition(document: Document, status: ProcessingStatus) -> None:
    if not document.status.can_transition_to(status):
        raise InvalidTransition(document.document_id, document.status.value, status.value)


def parse_chunk_id(chunk_id: str) -> tuple[str, int]:
    """Split ``{document_id}_{index}`` into its parts."""
    document_id, sep, raw_index = chunk_id.rpartition("_")
    if not sep or not document_id or not raw_index.isdigit():
        raise NotFound("chunk", chunk_id)
    return document_id, int(raw_index)
