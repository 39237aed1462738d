from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class BoundingBoxModel(BaseModel):
    page_number: int = Field(ge=1)
    left: float
    top: float
    right: float
    bottom: float
    coord_origin: str = "BOTTOMLEFT"


class DocumentResponse(BaseModel):
    document_id: str
    title: str
    display_title: str
    source_path: str
    status: str
    total_chunks: int
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse]


class ProcessingSummaryResponse(BaseModel):
    total: int
    completed: int
    pending: int
    processing: int
    failed: int


class ChunkResponse(BaseModel):
    chunk_id: str
    document_id: str
    index: int
    text: str
    page_numbers: list[int]
    bounding_boxes: list[BoundingBoxModel] = Field(default_factory=list)


class ChunkListResponse(BaseModel):
    document_id: str
    chunks: list[ChunkResponse]


class DeleteDocumentResponse(BaseModel):
    document_id: str
    chunks_removed: int


class StatsResponse(BaseModel):
    backend: str
    documents: int
    chunks: int
    dimension: int | None = None


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=50)
    active_document_id: str | None = None
    document_ids: list[str] | None = None


class SearchHit(BaseModel):
    chunk_id: str
    document_id: str
    text: str
    score: float
    page_numbers: list[int]


class SearchResponse(BaseModel):
    results: list[SearchHit]


class SessionCreateRequest(BaseModel):
    session_id: str | None = None
    title: str = ""


class ContextItemModel(BaseModel):
    item_id: str
    kind: str
    document_id: str
    document_title: str
    token_count: int
    checksum: str
    page_numbers: list[int]
    content: str


class SessionResponse(BaseModel):
    session_id: str
    title: str
    created_at: datetime
    items: list[ContextItemModel]
    attachments: int


class AddItemRequest(BaseModel):
    kind: Literal["text_selection", "page_range", "document"]
    document_id: str = Field(min_length=1)
    text: str | None = None
    page_numbers: list[int] = Field(default_factory=list)
    bounds: list[BoundingBoxModel] = Field(default_factory=list)
    character_range: tuple[int, int] | None = None


class AddItemResponse(BaseModel):
    added: bool
    item: ContextItemModel


class RemoveItemResponse(BaseModel):
    removed: bool


class ClearSessionResponse(BaseModel):
    removed: int


class ContextRequest(BaseModel):
    message: str
    active_document_id: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class ContextPiece(BaseModel):
    context_id: str
    source: Literal["explicit", "retrieved"]
    kind: str
    document_id: str
    document_title: str
    content: str
    token_count: int
    page_numbers: list[int]
    score: float | None = None


class ContextResponse(BaseModel):
    session_id: str
    rendered: str
    contexts: list[ContextPiece]
    token_count: int
    token_budget: int | None = None
    retrieval_status: str
    retrieval_error: str | None = None
    document_summary: dict[str, int]
    request_id: str
