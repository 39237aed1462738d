from __future__ import annotations

"""FastAPI application exposing document ingestion, search and chat context."""

import logging
import uuid
from pathlib import Path

from fastapi import FastAPI, File, HTTPException, Request, UploadFile

from context_engine.app.dependencies import get_engine
from context_engine.app.metrics import metrics_middleware, metrics_response
from context_engine.app.schemas import (
    AddItemRequest,
    AddItemResponse,
    BoundingBoxModel,
    ChunkListResponse,
    ChunkResponse,
    ClearSessionResponse,
    ContextItemModel,
    ContextPiece,
    ContextRequest,
    ContextResponse,
    DeleteDocumentResponse,
    DocumentListResponse,
    DocumentResponse,
    ProcessingSummaryResponse,
    RemoveItemResponse,
    SearchHit,
    SearchRequest,
    SearchResponse,
    SessionCreateRequest,
    SessionResponse,
    StatsResponse,
)
from context_engine.app.settings import settings
from context_engine.rag.embeddings import EmbeddingError, embed_text
from context_engine.rag.errors import (
    ContextEngineError,
    DimensionMismatch,
    DocumentNotReady,
    EmptyIndex,
    IngestionFailure,
    InvalidTransition,
    NotFound,
)
from context_engine.rag.types import (
    BoundingBox,
    ChatSession,
    ContextItem,
    Document,
    ExplicitContext,
    ProcessingStatus,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="PDF Context Engine", version="0.1.0")

SUPPORTED_SUFFIXES = {".pdf", ".txt", ".text", ".md", ".markdown"}


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


def _safe_error_message(exc: Exception) -> str:
    """Return a safe error type name for logs and responses."""
    return type(exc).__name__


def _http_error(exc: ContextEngineError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (DimensionMismatch, InvalidTransition, DocumentNotReady)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, IngestionFailure):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=_safe_error_message(exc))


def _document_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        document_id=document.document_id,
        title=document.title,
        display_title=document.display_title,
        source_path=document.source_path,
        status=document.status.value,
        total_chunks=document.total_chunks,
        error=document.error,
        created_at=document.created_at,
        updated_at=document.updated_at,
    )


def _box_model(box: BoundingBox) -> BoundingBoxModel:
    return BoundingBoxModel(
        page_number=box.page_number,
        left=box.left,
        top=box.top,
        right=box.right,
        bottom=box.bottom,
        coord_origin=box.coord_origin,
    )


def _item_model(item: ContextItem) -> ContextItemModel:
    return ContextItemModel(
        item_id=item.item_id,
        kind=item.kind.value,
        document_id=item.document_id,
        document_title=item.document_title,
        token_count=item.token_count,
        checksum=item.checksum,
        page_numbers=list(item.page_numbers),
        content=item.content,
    )


def _session_response(session: ChatSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        title=session.title,
        created_at=session.created_at,
        items=[_item_model(item) for item in session.items],
        attachments=len(session.attachments),
    )


async def _read_upload_bytes(upload: UploadFile, max_bytes: int | None) -> bytes:
    """Stream upload bytes with a hard size limit."""
    if not max_bytes or max_bytes <= 0:
        return await upload.read()
    buffer = bytearray()
    while True:
        chunk = await upload.read(65536)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise HTTPException(
                status_code=400,
                detail=f"File exceeds maximum size of {max_bytes} bytes",
            )
    return bytes(buffer)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, object]:
    """Health probe including chunk store reachability."""
    store_health = get_engine().store.health()
    status = "ok" if store_health.get("ok") else "degraded"
    return {"status": status, "store": store_health}


@app.get("/stats", response_model=StatsResponse)
async def stats() -> StatsResponse:
    """Return chunk store counts and embedding dimension."""
    return StatsResponse(**get_engine().store.stats())


@app.post("/documents", response_model=DocumentResponse)
async def upload_document(
    http_request: Request,
    file: UploadFile = File(...),
) -> DocumentResponse:
    """Import an uploaded PDF or text file and process it."""
    engine = get_engine()
    filename = file.filename or "upload.pdf"
    suffix = Path(filename).suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise HTTPException(status_code=400, detail=f"Unsupported file type: {suffix}")
    data = await _read_upload_bytes(file, settings.file_max_bytes)
    document = await engine.processor.import_document(
        title=Path(filename).stem, source_path=Path(filename).name, data=data
    )
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    try:
        document = await engine.processor.process(document.document_id)
    except IngestionFailure as exc:
        failed = engine.store.get_document(document.document_id)
        logger.error(
            "document_upload_failed",
            extra={
                "request_id": request_id,
                "document_id": document.document_id,
                "error": exc.reason,
            },
        )
        raise HTTPException(
            status_code=422,
            detail={
                "error": exc.reason,
                "document": _document_response(failed).model_dump(mode="json"),
            },
        ) from exc
    logger.info(
        "document_uploaded",
        extra={"request_id": request_id, "document_id": document.document_id},
    )
    return _document_response(document)


@app.get("/documents", response_model=DocumentListResponse)
async def list_documents() -> DocumentListResponse:
    documents = get_engine().store.documents()
    return DocumentListResponse(documents=[_document_response(doc) for doc in documents])


@app.get("/documents/summary", response_model=ProcessingSummaryResponse)
async def documents_summary() -> ProcessingSummaryResponse:
    summary = get_engine().binder.processing_summary()
    return ProcessingSummaryResponse(**summary.__dict__)


@app.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str) -> DocumentResponse:
    try:
        return _document_response(get_engine().store.get_document(document_id))
    except NotFound as exc:
        raise _http_error(exc) from exc


@app.get("/documents/{document_id}/chunks", response_model=ChunkListResponse)
async def get_document_chunks(document_id: str) -> ChunkListResponse:
    try:
        chunks = get_engine().store.chunks_for_document(document_id)
    except NotFound as exc:
        raise _http_error(exc) from exc
    return ChunkListResponse(
        document_id=document_id,
        chunks=[
            ChunkResponse(
                chunk_id=chunk.chunk_id,
                document_id=chunk.document_id,
                index=chunk.index,
                text=chunk.text,
                page_numbers=chunk.page_numbers,
                bounding_boxes=[_box_model(box) for box in chunk.bounding_boxes],
            )
            for chunk in chunks
        ],
    )


@app.post("/documents/{document_id}/process", response_model=DocumentResponse)
async def process_document(document_id: str) -> DocumentResponse:
    """Re-process a completed document or retry a failed one."""
    engine = get_engine()
    try:
        document = engine.store.get_document(document_id)
        if document.status == ProcessingStatus.FAILED:
            document = await engine.processor.retry(document_id)
        else:
            document = await engine.processor.process(document_id)
    except IngestionFailure as exc:
        failed = engine.store.get_document(document_id)
        raise HTTPException(
            status_code=422,
            detail={
                "error": exc.reason,
                "document": _document_response(failed).model_dump(mode="json"),
            },
        ) from exc
    except ContextEngineError as exc:
        raise _http_error(exc) from exc
    return _document_response(document)


@app.delete("/documents/{document_id}", response_model=DeleteDocumentResponse)
async def delete_document(document_id: str) -> DeleteDocumentResponse:
    try:
        removed = await get_engine().processor.remove_document(document_id)
    except NotFound as exc:
        raise _http_error(exc) from exc
    return DeleteDocumentResponse(document_id=document_id, chunks_removed=removed)


@app.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest) -> SearchResponse:
    """Raw similarity search for a text query."""
    engine = get_engine()
    try:
        vector = await embed_text(engine.embedder, request.query)
        results = await engine.search.search(
            vector,
            request.limit,
            request.active_document_id,
            document_ids=request.document_ids,
        )
    except EmptyIndex:
        results = []
    except EmbeddingError as exc:
        logger.warning("query_embedding_failed", extra={"error": _safe_error_message(exc)})
        raise HTTPException(status_code=502, detail="Query embedding failed") from exc
    except ContextEngineError as exc:
        raise _http_error(exc) from exc
    return SearchResponse(
        results=[
            SearchHit(
                chunk_id=result.chunk.chunk_id,
                document_id=result.chunk.document_id,
                text=result.chunk.text,
                score=result.score,
                page_numbers=result.chunk.page_numbers,
            )
            for result in results
        ]
    )


@app.post("/sessions", response_model=SessionResponse)
async def create_session(request: SessionCreateRequest) -> SessionResponse:
    session = get_engine().binder.open_session(request.session_id, title=request.title)
    return _session_response(session)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str) -> SessionResponse:
    try:
        return _session_response(get_engine().binder.get_session(session_id))
    except NotFound as exc:
        raise _http_error(exc) from exc


@app.post("/sessions/{session_id}/items", response_model=AddItemResponse)
async def add_session_item(session_id: str, request: AddItemRequest) -> AddItemResponse:
    """Pin a selection, page range or whole document to the session."""
    binder = get_engine().binder
    try:
        session = binder.get_session(session_id)
        if request.kind == "text_selection":
            item, added = binder.pin_selection(
                session,
                request.document_id,
                request.text or "",
                page_numbers=request.page_numbers,
                bounds=[BoundingBox(**box.model_dump()) for box in request.bounds],
                character_range=request.character_range,
            )
        elif request.kind == "page_range":
            item, added = binder.pin_pages(session, request.document_id, request.page_numbers)
        else:
            item, added = binder.pin_document(session, request.document_id)
    except ContextEngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return AddItemResponse(added=added, item=_item_model(item))


@app.delete("/sessions/{session_id}/items/{item_id}", response_model=RemoveItemResponse)
async def remove_session_item(session_id: str, item_id: str) -> RemoveItemResponse:
    binder = get_engine().binder
    try:
        session = binder.get_session(session_id)
    except NotFound as exc:
        raise _http_error(exc) from exc
    return RemoveItemResponse(removed=binder.remove_item(session, item_id))


@app.post("/sessions/{session_id}/clear", response_model=ClearSessionResponse)
async def clear_session(session_id: str) -> ClearSessionResponse:
    binder = get_engine().binder
    try:
        session = binder.get_session(session_id)
    except NotFound as exc:
        raise _http_error(exc) from exc
    return ClearSessionResponse(removed=binder.clear_all(session))


@app.post("/sessions/{session_id}/context", response_model=ContextResponse)
async def build_context(
    session_id: str, request: ContextRequest, http_request: Request
) -> ContextResponse:
    """Assemble explicit and retrieved context for the next chat message."""
    engine = get_engine()
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    try:
        session = engine.binder.get_session(session_id)
        bundle, rendered = await engine.assembler.build(
            session,
            request.message,
            active_document_id=request.active_document_id,
            timeout=request.timeout,
        )
    except ContextEngineError as exc:
        logger.error(
            "context_build_failed",
            extra={"request_id": request_id, "error": _safe_error_message(exc)},
        )
        raise _http_error(exc) from exc
    engine.binder.mark_sent(session)
    return ContextResponse(
        session_id=session_id,
        rendered=rendered,
        contexts=[
            ContextPiece(
                context_id=context.context_id,
                source="explicit" if isinstance(context, ExplicitContext) else "retrieved",
                kind=context.kind.value,
                document_id=context.document_id,
                document_title=context.document_title,
                content=context.content,
                token_count=context.token_count,
                page_numbers=list(context.page_numbers),
                score=getattr(context, "score", None),
            )
            for context in bundle.contexts
        ],
        token_count=bundle.token_count,
        token_budget=bundle.token_budget,
        retrieval_status=bundle.retrieval_status,
        retrieval_error=bundle.retrieval_error,
        document_summary=bundle.document_summary(),
        request_id=request_id,
    )
