from __future__ import annotations

"""Error taxonomy shared by ingestion, search and context assembly."""


class ContextEngineError(RuntimeError):
    """Base class for context engine failures."""
    pass


class NotFound(ContextEngineError):
    """Raised when an operation references an unknown document, chunk or session."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class IngestionFailure(ContextEngineError):
    """Raised when a document could not be chunked, embedded or stored."""

    def __init__(self, document_id: str, reason: str) -> None:
        super().__init__(f"Ingestion failed for document {document_id}: {reason}")
        self.document_id = document_id
        self.reason = reason
        self.retryable = True


class DimensionMismatch(ContextEngineError):
    """Raised when embeddings of different dimensionality would be mixed."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class EmptyIndex(ContextEngineError):
    """Raised when there are no searchable chunks."""
    pass


class SearchTimeout(ContextEngineError):
    """Raised when query embedding or search exceeds its deadline."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Retrieval timed out after {timeout:g}s")
        self.timeout = timeout


class InvalidTransition(ContextEngineError):
    """Raised when a processing status change is not allowed."""

    def __init__(self, document_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Document {document_id} cannot move from {current} to {target}"
        )
        self.document_id = document_id
        self.current = current
        self.target = target


class DocumentNotReady(ContextEngineError):
    """Raised when a document must be completed before use."""

    def __init__(self, document_id: str, status: str) -> None:
        super().__init__(f"Document {document_id} is {status}, not completed")
        self.document_id = document_id
        self.status = status
