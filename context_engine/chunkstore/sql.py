from __future__ import annotations

"""SQL-backed chunk store built on SQLAlchemy Core."""

import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from context_engine.chunkstore.base import (
    ChunkStoreError,
    DocumentLocks,
    check_transition,
    parse_chunk_id,
    validate_chunks,
)
from context_engine.rag.errors import NotFound
from context_engine.rag.types import (
    BoundingBox,
    Chunk,
    Document,
    ProcessingStatus,
    ProcessingSummary,
    utc_now,
)


class SQLChunkStore:
    """Store documents and chunks in a SQL database.

    Chunk replacement deletes and inserts inside one transaction, so a
    concurrent reader sees either the old chunk list or the new one.
    """

    def __init__(self, connection_uri: str) -> None:
        self._uri = connection_uri
        self._engine = create_engine(connection_uri, **_engine_options(connection_uri))
        self._metadata = MetaData()
        self._documents = Table(
            "documents",
            self._metadata,
            Column("document_id", String(64), primary_key=True),
            Column("title", String(512), nullable=False),
            Column("source_path", Text, nullable=False),
            Column("status", String(32), nullable=False),
            Column("total_chunks", Integer, nullable=False, default=0),
            Column("document_title", String(512), nullable=True),
            Column("error", Text, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
            Column("updated_at", DateTime(timezone=True), nullable=False),
        )
        self._chunks = Table(
            "chunks",
            self._metadata,
            Column("document_id", String(64), primary_key=True),
            Column("chunk_index", Integer, primary_key=True),
            Column("text", Text, nullable=False),
            Column("dimension", Integer, nullable=False),
            Column("embedding", Text, nullable=False),
            Column("bounding_boxes", Text, nullable=True),
            Column("pages", Text, nullable=True),
            Column("metadata", Text, nullable=True),
        )
        self._document_locks = DocumentLocks()
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise ChunkStoreError(f"Unable to initialize chunk store: {exc}") from exc

    @property
    def dimension(self) -> int | None:
        with self._engine.connect() as conn:
            return conn.execute(select(self._chunks.c.dimension).limit(1)).scalar()

    def add_document(self, document: Document) -> Document:
        with self._engine.begin() as conn:
            existing = conn.execute(
                select(self._documents.c.document_id).where(
                    self._documents.c.document_id == document.document_id
                )
            ).first()
            if existing is not None:
                raise ValueError(f"Document already exists: {document.document_id}")
            conn.execute(self._documents.insert().values(**_document_row(document)))
        return document

    def get_document(self, document_id: str) -> Document:
        with self._engine.connect() as conn:
            return self._load_document(conn, document_id)

    def documents(self) -> list[Document]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                self._documents.select().order_by(self._documents.c.created_at)
            ).mappings()
            return [_row_document(row) for row in rows]

    def set_status(
        self,
        document_id: str,
        status: ProcessingStatus,
        error: str | None = None,
        document_title: str | None = None,
    ) -> Document:
        with self._engine.begin() as conn:
            current = self._load_document(conn, document_id)
            check_transition(current, status)
            updated = replace(
                current,
                status=status,
                error=error if status == ProcessingStatus.FAILED else None,
                document_title=document_title or current.document_title,
                total_chunks=self._count(conn, document_id),
                updated_at=utc_now(),
            )
            conn.execute(
                self._documents.update()
                .where(self._documents.c.document_id == document_id)
                .values(
                    status=updated.status.value,
                    error=updated.error,
                    document_title=updated.document_title,
                    total_chunks=updated.total_chunks,
                    updated_at=updated.updated_at,
                )
            )
        return updated

    def remove_document(self, document_id: str) -> int:
        with self._document_locks.for_document(document_id):
            with self._engine.begin() as conn:
                self._load_document(conn, document_id)
                removed = conn.execute(
                    self._chunks.delete().where(self._chunks.c.document_id == document_id)
                ).rowcount
                conn.execute(
                    self._documents.delete().where(
                        self._documents.c.document_id == document_id
                    )
                )
        self._document_locks.discard(document_id)
        return removed or 0

    def put(self, document_id: str, chunks: Iterable[Chunk]) -> int:
        """Replace all chunks of a document; repeating a put is a no-op."""
        candidates = list(chunks)
        with self._document_locks.for_document(document_id):
            with self._engine.begin() as conn:
                self._load_document(conn, document_id)
                other = conn.execute(
                    select(self._chunks.c.dimension)
                    .where(self._chunks.c.document_id != document_id)
                    .limit(1)
                ).scalar()
                ordered, _ = validate_chunks(document_id, candidates, other)
                conn.execute(
                    self._chunks.delete().where(self._chunks.c.document_id == document_id)
                )
                if ordered:
                    conn.execute(
                        self._chunks.insert(), [_chunk_row(chunk) for chunk in ordered]
                    )
                conn.execute(
                    self._documents.update()
                    .where(self._documents.c.document_id == document_id)
                    .values(total_chunks=len(ordered))
                )
        return len(ordered)

    def clear_chunks(self, document_id: str) -> int:
        with self._document_locks.for_document(document_id):
            with self._engine.begin() as conn:
                self._load_document(conn, document_id)
                removed = conn.execute(
                    self._chunks.delete().where(self._chunks.c.document_id == document_id)
                ).rowcount
                conn.execute(
                    self._documents.update()
                    .where(self._documents.c.document_id == document_id)
                    .values(total_chunks=0)
                )
        return removed or 0

    def all_chunks(self) -> list[Chunk]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                self._chunks.select().order_by(
                    self._chunks.c.document_id, self._chunks.c.chunk_index
                )
            ).mappings()
            return [_row_chunk(row) for row in rows]

    def chunks_for_document(self, document_id: str) -> list[Chunk]:
        with self._engine.connect() as conn:
            self._load_document(conn, document_id)
            return self._load_chunks(conn, document_id)

    def get_chunk(self, chunk_id: str) -> Chunk:
        document_id, index = parse_chunk_id(chunk_id)
        with self._engine.connect() as conn:
            row = conn.execute(
                self._chunks.select().where(
                    (self._chunks.c.document_id == document_id)
                    & (self._chunks.c.chunk_index == index)
                )
            ).mappings().first()
        if row is None:
            raise NotFound("chunk", chunk_id)
        return _row_chunk(row)

    def chunk_count(self) -> int:
        with self._engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(self._chunks)).scalar() or 0

    def snapshot(
        self, statuses: Iterable[ProcessingStatus] = (ProcessingStatus.COMPLETED,)
    ) -> list[tuple[Document, tuple[Chunk, ...]]]:
        """Read documents in the given states and their chunks in one transaction."""
        allowed = [status.value for status in statuses]
        with self._engine.begin() as conn:
            documents = [
                _row_document(row)
                for row in conn.execute(
                    self._documents.select().where(self._documents.c.status.in_(allowed))
                ).mappings()
            ]
            return [
                (document, tuple(self._load_chunks(conn, document.document_id)))
                for document in documents
            ]

    def processing_summary(self) -> ProcessingSummary:
        return ProcessingSummary.from_documents(self.documents())

    def stats(self) -> dict[str, int | str | None]:
        with self._engine.connect() as conn:
            documents = conn.execute(
                select(func.count()).select_from(self._documents)
            ).scalar()
            chunks = conn.execute(select(func.count()).select_from(self._chunks)).scalar()
        return {
            "backend": "sql",
            "documents": documents or 0,
            "chunks": chunks or 0,
            "dimension": self.dimension,
        }

    def health(self) -> dict[str, str | bool]:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            return {"backend": "sql", "ok": False, "error": type(exc).__name__}
        return {"backend": "sql", "ok": True}

    def _load_document(self, conn: Any, document_id: str) -> Document:
        row = conn.execute(
            self._documents.select().where(self._documents.c.document_id == document_id)
        ).mappings().first()
        if row is None:
            raise NotFound("document", document_id)
        return _row_document(row)

    def _load_chunks(self, conn: Any, document_id: str) -> list[Chunk]:
        rows = conn.execute(
            self._chunks.select()
            .where(self._chunks.c.document_id == document_id)
            .order_by(self._chunks.c.chunk_index)
        ).mappings()
        return [_row_chunk(row) for row in rows]

    def _count(self, conn: Any, document_id: str) -> int:
        return conn.execute(
            select(func.count())
            .select_from(self._chunks)
            .where(self._chunks.c.document_id == document_id)
        ).scalar() or 0


def _engine_options(uri: str) -> dict[str, Any]:
    if not uri.startswith("sqlite"):
        return {}
    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if uri in {"sqlite://", "sqlite:///:memory:"}:
        options["poolclass"] = StaticPool
    return options


def _document_row(document: Document) -> dict[str, Any]:
    return {
        "document_id": document.document_id,
        "title": document.title,
        "source_path": document.source_path,
        "status": document.status.value,
        "total_chunks": document.total_chunks,
        "document_title": document.document_title,
        "error": document.error,
        "created_at": document.created_at,
        "updated_at": document.updated_at,
    }


def _row_document(row: Any) -> Document:
    return Document(
        document_id=row["document_id"],
        title=row["title"],
        source_path=row["source_path"],
        status=ProcessingStatus.parse(row["status"]),
        total_chunks=row["total_chunks"] or 0,
        document_title=row["document_title"],
        error=row["error"],
        created_at=_aware(row["created_at"]),
        updated_at=_aware(row["updated_at"]),
    )


def _aware(value: datetime) -> datetime:
    """SQLite drops tzinfo on read; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _chunk_row(chunk: Chunk) -> dict[str, Any]:
    boxes = [
        {
            "page": box.page_number,
            "l": box.left,
            "t": box.top,
            "r": box.right,
            "b": box.bottom,
            "coord_origin": box.coord_origin,
        }
        for box in chunk.bounding_boxes
    ]
    return {
        "document_id": chunk.document_id,
        "chunk_index": chunk.index,
        "text": chunk.text,
        "dimension": chunk.dimension,
        "embedding": json.dumps(list(chunk.embedding)),
        "bounding_boxes": json.dumps(boxes),
        "pages": json.dumps(list(chunk.pages)),
        "metadata": json.dumps(chunk.metadata, ensure_ascii=True, default=str),
    }


def _row_chunk(row: Any) -> Chunk:
    boxes = tuple(
        BoundingBox(
            page_number=int(box["page"]),
            left=float(box["l"]),
            top=float(box["t"]),
            right=float(box["r"]),
            bottom=float(box["b"]),
            coord_origin=box.get("coord_origin", "BOTTOMLEFT"),
        )
        for box in json.loads(row["bounding_boxes"] or "[]")
    )
    return Chunk(
        document_id=row["document_id"],
        index=row["chunk_index"],
        text=row["text"],
        embedding=tuple(float(value) for value in json.loads(row["embedding"])),
        bounding_boxes=boxes,
        pages=tuple(int(page) for page in json.loads(row["pages"] or "[]")),
        metadata=json.loads(row["metadata"] or "{}"),
    )
