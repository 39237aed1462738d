from __future__ import annotations

"""Core data types for documents, chunks and chat context."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingStatus(str, Enum):
    """Closed set of per-document processing states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: str) -> ProcessingStatus:
        """Parse a stored status string, rejecting unknown values."""
        try:
            return cls(str(raw).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown processing status: {raw!r}") from exc

    def can_transition_to(self, target: ProcessingStatus) -> bool:
        """Return True when the state machine allows moving to target."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.PROCESSING: frozenset(
        {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED, ProcessingStatus.PENDING}
    ),
    ProcessingStatus.COMPLETED: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.FAILED: frozenset({ProcessingStatus.PROCESSING}),
}


@dataclass(frozen=True)
class Document:
    """Imported source document and its processing state."""
    document_id: str
    title: str
    source_path: str
    status: ProcessingStatus = ProcessingStatus.PENDING
    total_chunks: int = 0
    document_title: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def display_title(self) -> str:
        """Title reported by the provider, falling back to the import title."""
        return self.document_title or self.title


@dataclass(frozen=True)
class BoundingBox:
    """Rectangle locating text on a single page."""
    page_number: int
    left: float
    top: float
    right: float
    bottom: float
    coord_origin: str = "BOTTOMLEFT"

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return abs(self.top - self.bottom)

    def intersects(self, other: BoundingBox) -> bool:
        """Check whether two boxes on the same page overlap."""
        if self.page_number != other.page_number:
            return False
        x_overlap = max(self.left, other.left) < min(self.right, other.right)
        low = max(min(self.top, self.bottom), min(other.top, other.bottom))
        high = min(max(self.top, self.bottom), max(other.top, other.bottom))
        return x_overlap and low < high


@dataclass(frozen=True)
class Chunk:
    """Embedded span of document text with page provenance."""
    document_id: str
    index: int
    text: str
    embedding: tuple[float, ...]
    bounding_boxes: tuple[BoundingBox, ...] = ()
    pages: tuple[int, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}_{self.index}"

    @property
    def dimension(self) -> int:
        return len(self.embedding)

    @property
    def page_numbers(self) -> list[int]:
        """Pages named explicitly or by any bounding box, ascending."""
        return sorted(set(self.pages) | {box.page_number for box in self.bounding_boxes})

    @property
    def primary_page(self) -> int | None:
        pages = self.page_numbers
        return pages[0] if pages else None


@dataclass(frozen=True)
class SearchResult:
    """Chunk returned by similarity search with its cosine score."""
    chunk: Chunk
    score: float


class ContextKind(str, Enum):
    """Shapes of context that can ground a chat turn."""
    PAGE_RANGE = "page_range"
    TEXT_SELECTION = "text_selection"
    DOCUMENT = "document"
    SEMANTIC_CHUNK = "semantic_chunk"

    @property
    def display_name(self) -> str:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    ContextKind.PAGE_RANGE: "Page Range",
    ContextKind.TEXT_SELECTION: "Selected Text",
    ContextKind.DOCUMENT: "Full Document",
    ContextKind.SEMANTIC_CHUNK: "Relevant Section",
}


@dataclass(frozen=True)
class ExplicitContext:
    """User-specified context (selection, page range or pinned document)."""
    context_id: str
    document_id: str
    document_title: str
    kind: ContextKind
    content: str
    token_count: int
    checksum: str
    page_numbers: tuple[int, ...] = ()
    selection_bounds: tuple[BoundingBox, ...] = ()
    character_range: tuple[int, int] | None = None
    extraction_method: str = "manual"


@dataclass(frozen=True)
class RetrievedContext:
    """Chunk selected by similarity search."""
    context_id: str
    document_id: str
    document_title: str
    chunk_index: int
    content: str
    token_count: int
    checksum: str
    score: float
    page_numbers: tuple[int, ...] = ()
    bounding_boxes: tuple[BoundingBox, ...] = ()

    @property
    def kind(self) -> ContextKind:
        return ContextKind.SEMANTIC_CHUNK


ContextSource = Union[ExplicitContext, RetrievedContext]


@dataclass(frozen=True)
class ContextBundle:
    """Deduplicated, budgeted context assembled for one chat turn."""
    session_id: str
    contexts: tuple[ContextSource, ...] = ()
    active_document_id: str | None = None
    retrieval_status: str = "ok"
    retrieval_error: str | None = None
    token_budget: int | None = None

    @property
    def token_count(self) -> int:
        return sum(context.token_count for context in self.contexts)

    @property
    def explicit_contexts(self) -> list[ExplicitContext]:
        return [c for c in self.contexts if isinstance(c, ExplicitContext)]

    @property
    def retrieved_contexts(self) -> list[RetrievedContext]:
        return [c for c in self.contexts if isinstance(c, RetrievedContext)]

    @property
    def degraded(self) -> bool:
        return self.retrieval_status not in {"ok", "skipped"}

    def document_summary(self) -> dict[str, int]:
        """Return document ID -> number of context pieces."""
        summary: dict[str, int] = {}
        for context in self.contexts:
            summary[context.document_id] = summary.get(context.document_id, 0) + 1
        return summary


@dataclass(frozen=True)
class ContextItem:
    """Context pinned to a chat session across turns."""
    item_id: str
    kind: ContextKind
    content: str
    document_id: str
    document_title: str
    token_count: int
    checksum: str
    page_numbers: tuple[int, ...] = ()
    bounding_boxes: tuple[BoundingBox, ...] = ()
    character_range: tuple[int, int] | None = None
    added_at: datetime = field(default_factory=utc_now)

    def to_context(self) -> ExplicitContext:
        """Convert the pin into an explicit context with the same identity."""
        return ExplicitContext(
            context_id=self.item_id,
            document_id=self.document_id,
            document_title=self.document_title,
            kind=self.kind,
            content=self.content,
            token_count=self.token_count,
            checksum=self.checksum,
            page_numbers=self.page_numbers,
            selection_bounds=self.bounding_boxes,
            character_range=self.character_range,
            extraction_method="session.pin",
        )


@dataclass
class ChatSession:
    """Chat conversation with pinned items and pending attachments."""
    session_id: str
    title: str = ""
    created_at: datetime = field(default_factory=utc_now)
    items: list[ContextItem] = field(default_factory=list)
    attachments: list[ExplicitContext] = field(default_factory=list)

    def explicit_contexts(self) -> list[ExplicitContext]:
        """Pinned items first, then pending attachments, in the order added."""
        return [item.to_context() for item in self.items] + list(self.attachments)


@dataclass(frozen=True)
class ProcessingSummary:
    """Corpus-wide processing progress counts."""
    total: int = 0
    completed: int = 0
    pending: int = 0
    processing: int = 0
    failed: int = 0

    @classmethod
    def from_documents(cls, documents: list[Document]) -> ProcessingSummary:
        counts = {status: 0 for status in ProcessingStatus}
        for document in documents:
            counts[document.status] += 1
        return cls(
            total=len(documents),
            completed=counts[ProcessingStatus.COMPLETED],
            pending=counts[ProcessingStatus.PENDING],
            processing=counts[ProcessingStatus.PROCESSING],
            failed=counts[ProcessingStatus.FAILED],
        )


@dataclass(frozen=True)
class StatusChange:
    """Notification emitted on every processing status transition."""
    document_id: str
    previous: ProcessingStatus | None
    current: ProcessingStatus | None
    error: str | None = None
