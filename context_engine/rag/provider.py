from __future__ import annotations

"""Chunking and embedding providers that turn source bytes into chunks."""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx

from context_engine.loaders.chunking import chunk_blocks
from context_engine.loaders.pdf import load_pdf_bytes
from context_engine.loaders.text import load_text_bytes
from context_engine.rag.embeddings import (
    EmbeddingError,
    EmbeddingProvider,
    embed_many,
    validate_vector,
)
from context_engine.rag.types import BoundingBox, Chunk, Document

logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF"


class ProviderError(RuntimeError):
    """Raised when a chunking provider fails or returns malformed data."""
    pass


@dataclass(frozen=True)
class ProcessedDocument:
    """All chunks produced for one document in a single provider call."""
    document_title: str | None
    chunks: list[Chunk] = field(default_factory=list)


class ChunkingProvider(Protocol):
    """Protocol for services that chunk and embed a whole document."""

    async def process_document(self, document: Document, data: bytes) -> ProcessedDocument:
        ...


def is_pdf(source_path: str, data: bytes) -> bool:
    return data.startswith(_PDF_MAGIC) or source_path.lower().endswith(".pdf")


def _origin(document: Document, data: bytes) -> dict[str, Any]:
    return {
        "filename": Path(document.source_path).name or document.title,
        "mimetype": "application/pdf" if is_pdf(document.source_path, data) else "text/plain",
        "binary_hash": hashlib.sha256(data).hexdigest(),
    }


@dataclass
class LocalChunkingProvider:
    """Chunk with PyMuPDF and tiktoken in-process, embed with an EmbeddingProvider."""
    embedder: EmbeddingProvider
    max_tokens: int = 400
    overlap: int = 40
    encoding_name: str = "cl100k_base"
    use_tiktoken: bool = True

    async def process_document(self, document: Document, data: bytes) -> ProcessedDocument:
        return await asyncio.to_thread(self._process, document, data)

    def _process(self, document: Document, data: bytes) -> ProcessedDocument:
        title = None
        if is_pdf(document.source_path, data):
            content = load_pdf_bytes(data)
            blocks = content.blocks
            title = content.title
        else:
            blocks = load_text_bytes(data)
        drafts = chunk_blocks(
            blocks,
            max_tokens=self.max_tokens,
            overlap=self.overlap,
            encoding_name=self.encoding_name,
            use_tiktoken=self.use_tiktoken,
        )
        if not drafts:
            return ProcessedDocument(document_title=title, chunks=[])
        vectors = embed_many(self.embedder, [draft.text for draft in drafts])
        if len(vectors) != len(drafts):
            raise ProviderError(
                f"Embedder returned {len(vectors)} vectors for {len(drafts)} chunks"
            )
        origin = _origin(document, data)
        chunks = [
            Chunk(
                document_id=document.document_id,
                index=index,
                text=draft.text,
                embedding=tuple(vector),
                bounding_boxes=draft.bounding_boxes,
                pages=draft.page_numbers,
                metadata={"origin": origin},
            )
            for index, (draft, vector) in enumerate(zip(drafts, vectors))
        ]
        logger.info(
            "document_chunked",
            extra={"document_id": document.document_id, "chunks": len(chunks)},
        )
        return ProcessedDocument(document_title=title, chunks=chunks)


@dataclass
class HTTPChunkingProvider:
    """Client for an external processing server exposing /process-pdf."""
    base_url: str
    timeout: float = 120.0
    transport: httpx.AsyncBaseTransport | None = None

    async def process_document(self, document: Document, data: bytes) -> ProcessedDocument:
        origin = _origin(document, data)
        files = {"file": (origin["filename"], data, origin["mimetype"])}
        form = {"document_uuid": document.document_id}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post("/process-pdf", data=form, files=files)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise ProviderError(f"Processing server request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError("Processing server returned invalid JSON") from exc
        return parse_process_response(document.document_id, payload)

    async def health(self) -> bool:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=5.0, transport=self.transport
            ) as client:
                response = await client.get("/health")
        except httpx.HTTPError:
            return False
        return response.status_code == 200


def parse_process_response(document_id: str, payload: Any) -> ProcessedDocument:
    """Convert a /process-pdf response body into chunks for document_id."""
    if not isinstance(payload, dict):
        raise ProviderError("Processing server response is not an object")
    if not payload.get("success", False):
        raise ProviderError(str(payload.get("message") or "Processing server reported failure"))
    raw_chunks = payload.get("chunks") or []
    chunks: list[Chunk] = []
    for index, raw in enumerate(raw_chunks):
        embedding = raw.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise ProviderError(f"Chunk {index} has no embedding")
        try:
            vector = validate_vector(embedding, len(embedding))
        except EmbeddingError as exc:
            raise ProviderError(f"Chunk {index} has an invalid embedding") from exc
        metadata = raw.get("metadata") or {}
        boxes, pages = _provenance(metadata.get("doc_items") or [])
        chunks.append(
            Chunk(
                document_id=document_id,
                index=index,
                text=str(raw.get("text") or ""),
                embedding=tuple(vector),
                bounding_boxes=boxes,
                pages=pages,
                metadata={
                    "origin": metadata.get("origin") or {},
                    "source_chunk_id": raw.get("chunk_id"),
                },
            )
        )
    expected = payload.get("total_chunks")
    if isinstance(expected, int) and expected != len(chunks):
        logger.warning(
            "chunk_count_mismatch",
            extra={"document_id": document_id, "expected": expected, "received": len(chunks)},
        )
    return ProcessedDocument(document_title=payload.get("document_title"), chunks=chunks)


def _provenance(doc_items: list[dict[str, Any]]) -> tuple[tuple[BoundingBox, ...], tuple[int, ...]]:
    boxes: list[BoundingBox] = []
    pages: set[int] = set()
    for item in doc_items:
        for prov in item.get("prov") or []:
            page = prov.get("page_no")
            if page is None:
                continue
            pages.add(int(page))
            bbox = prov.get("bbox")
            if bbox:
                boxes.append(_parse_bbox(int(page), bbox))
    return tuple(boxes), tuple(sorted(pages))


def _parse_bbox(page: int, bbox: dict[str, Any]) -> BoundingBox:
    """Accept either l/t/r/b or l/t/w/h boxes."""
    origin = str(bbox.get("coord_origin") or "BOTTOMLEFT").upper()
    left = float(bbox.get("l", 0.0))
    top = float(bbox.get("t", 0.0))
    right = float(bbox["r"]) if "r" in bbox else left + float(bbox.get("w", 0.0))
    if "b" in bbox:
        bottom = float(bbox["b"])
    elif origin == "TOPLEFT":
        bottom = top + float(bbox.get("h", 0.0))
    else:
        bottom = top - float(bbox.get("h", 0.0))
    return BoundingBox(
        page_number=page, left=left, top=top, right=right, bottom=bottom, coord_origin=origin
    )


@dataclass
class HTTPQueryEmbedder:
    """Query embeddings from the processing server's /embed-text endpoint.

    A non-positive dimension is learned from the first response.
    """
    base_url: str
    dimension: int = 0
    timeout: float = 30.0
    transport: httpx.BaseTransport | None = None
    async_transport: httpx.AsyncBaseTransport | None = None

    def embed(self, text: str) -> list[float]:
        try:
            with httpx.Client(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = client.post("/embed-text", json=self._body(text))
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingError("Embedding server returned invalid JSON") from exc
        return self._vector(payload)

    async def aembed(self, text: str) -> list[float]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.async_transport
            ) as client:
                response = await client.post("/embed-text", json=self._body(text))
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingError("Embedding server returned invalid JSON") from exc
        return self._vector(payload)

    def _body(self, text: str) -> dict[str, str]:
        return {"text": text, "input_type": "query"}

    def _vector(self, payload: Any) -> list[float]:
        if not isinstance(payload, dict) or not payload.get("success", False):
            raise EmbeddingError("Embedding server reported failure")
        embedding = payload.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingError("Embedding response missing embedding vector")
        if self.dimension <= 0:
            self.dimension = len(embedding)
        return validate_vector(embedding, self.dimension)
