from __future__ import annotations

"""Document processing state machine driving chunking, embedding and storage."""

import asyncio
import logging
import re
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Iterable

from context_engine.chunkstore.base import ChunkStore
from context_engine.rag.errors import ContextEngineError, IngestionFailure, InvalidTransition
from context_engine.rag.metrics import INGESTION_OUTCOMES
from context_engine.rag.provider import ChunkingProvider, ProcessedDocument
from context_engine.rag.types import Document, ProcessingStatus, StatusChange

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusChange], None]

_SUFFIX_PATTERN = re.compile(r"\.[a-z0-9]{1,10}")


class DocumentProcessor:
    """Move documents through pending, processing, completed and failed.

    Runs for one document are serialized; runs across documents share a
    semaphore of ``max_concurrency`` slots.
    """

    def __init__(
        self,
        store: ChunkStore,
        provider: ChunkingProvider,
        max_concurrency: int = 2,
        upload_dir: str | Path | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.upload_dir = (
            Path(upload_dir)
            if upload_dir is not None
            else Path(tempfile.gettempdir()) / "context_engine_uploads"
        )
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def import_document(
        self,
        title: str,
        source_path: str,
        data: bytes | None = None,
        document_id: str | None = None,
    ) -> Document:
        """Register a pending document.

        Supplied bytes are written to ``upload_dir`` under a server-generated
        name, which becomes the document's ``source_path``; ``source_path`` is
        then only used for its file suffix.
        """
        document_id = document_id or str(uuid.uuid4())
        stored_path = self._upload_path(document_id, source_path) if data is not None else None
        document = Document(
            document_id=document_id,
            title=title,
            source_path=str(stored_path) if stored_path is not None else source_path,
        )
        await asyncio.to_thread(self.store.add_document, document)
        if stored_path is not None:
            try:
                await asyncio.to_thread(self._write_upload, stored_path, data)
            except OSError:
                await asyncio.to_thread(self.store.remove_document, document_id)
                raise
        logger.info(
            "document_imported",
            extra={"document_id": document.document_id, "title": title},
        )
        self._emit(StatusChange(document.document_id, None, document.status))
        return document

    async def process(self, document_id: str, data: bytes | None = None) -> Document:
        """Chunk, embed and store a document, returning its completed record.

        ``data`` overrides the stored source for this run only. Raises
        IngestionFailure after recording the failed status.
        """
        async with self._lock_for(document_id):
            async with self._semaphore:
                task = asyncio.create_task(self._run(document_id, data))
                self._tasks[document_id] = task
                try:
                    return await task
                finally:
                    if self._tasks.get(document_id) is task:
                        del self._tasks[document_id]

    async def retry(self, document_id: str) -> Document:
        """Re-run processing for a failed document."""
        document = await asyncio.to_thread(self.store.get_document, document_id)
        if document.status != ProcessingStatus.FAILED:
            raise InvalidTransition(
                document_id, document.status.value, ProcessingStatus.PROCESSING.value
            )
        return await self.process(document_id)

    async def process_many(
        self, document_ids: Iterable[str]
    ) -> dict[str, Document | IngestionFailure]:
        """Process documents concurrently; each failure is isolated and returned."""

        async def run_one(document_id: str) -> tuple[str, Document | IngestionFailure]:
            try:
                return document_id, await self.process(document_id)
            except IngestionFailure as exc:
                return document_id, exc
            except ContextEngineError as exc:
                return document_id, IngestionFailure(document_id, str(exc))

        ordered = list(dict.fromkeys(document_ids))
        results = await asyncio.gather(*(run_one(document_id) for document_id in ordered))
        return dict(results)

    async def remove_document(self, document_id: str) -> int:
        """Cancel any in-flight run, then delete the document and its chunks."""
        task = self._tasks.get(document_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        async with self._lock_for(document_id):
            previous = await asyncio.to_thread(self.store.get_document, document_id)
            removed = await asyncio.to_thread(self.store.remove_document, document_id)
        self._locks.pop(document_id, None)
        await asyncio.to_thread(self._discard_upload, previous)
        logger.info(
            "document_removed",
            extra={"document_id": document_id, "chunks_removed": removed},
        )
        self._emit(StatusChange(document_id, previous.status, None))
        return removed

    async def _run(self, document_id: str, data: bytes | None) -> Document:
        starting = asyncio.ensure_future(
            self._transition(document_id, ProcessingStatus.PROCESSING)
        )
        try:
            document = await asyncio.shield(starting)
        except asyncio.CancelledError:
            # the worker thread may still commit PROCESSING after the cancel
            await asyncio.wait({starting})
            if not starting.cancelled() and starting.exception() is None:
                await self._reset_cancelled(document_id)
            raise
        try:
            payload = await self._source_bytes(document, data)
            if not payload:
                raise IngestionFailure(document_id, "Source document is empty")
            processed: ProcessedDocument = await self.provider.process_document(
                document, payload
            )
            if not processed.chunks:
                raise IngestionFailure(document_id, "Provider returned no chunks")
            await asyncio.to_thread(self.store.put, document_id, processed.chunks)
        except asyncio.CancelledError:
            await self._reset_cancelled(document_id)
            raise
        except Exception as exc:
            failure = (
                exc
                if isinstance(exc, IngestionFailure)
                else IngestionFailure(document_id, f"{type(exc).__name__}: {exc}")
            )
            await asyncio.to_thread(self.store.clear_chunks, document_id)
            await self._transition(document_id, ProcessingStatus.FAILED, error=failure.reason)
            INGESTION_OUTCOMES.labels(ProcessingStatus.FAILED.value).inc()
            logger.warning(
                "document_processing_failed",
                extra={"document_id": document_id, "error": failure.reason},
            )
            if failure is exc:
                raise
            raise failure from exc
        completed = await self._transition(
            document_id,
            ProcessingStatus.COMPLETED,
            document_title=processed.document_title,
        )
        INGESTION_OUTCOMES.labels(ProcessingStatus.COMPLETED.value).inc()
        logger.info(
            "document_processed",
            extra={"document_id": document_id, "chunks": completed.total_chunks},
        )
        return completed

    async def _source_bytes(self, document: Document, data: bytes | None) -> bytes:
        if data is not None:
            return data
        return await asyncio.to_thread(Path(document.source_path).read_bytes)

    def _upload_path(self, document_id: str, source_path: str) -> Path:
        suffix = Path(source_path).suffix.lower()
        if not _SUFFIX_PATTERN.fullmatch(suffix):
            suffix = ""
        return self.upload_dir / f"{uuid.uuid5(uuid.NAMESPACE_URL, document_id).hex}{suffix}"

    def _write_upload(self, path: Path, data: bytes) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def _discard_upload(self, document: Document) -> None:
        path = Path(document.source_path)
        if path.parent.resolve() == self.upload_dir.resolve():
            path.unlink(missing_ok=True)

    async def _reset_cancelled(self, document_id: str) -> None:
        await asyncio.to_thread(self.store.clear_chunks, document_id)
        await self._transition(document_id, ProcessingStatus.PENDING)
        INGESTION_OUTCOMES.labels("cancelled").inc()
        logger.info("document_processing_cancelled", extra={"document_id": document_id})

    async def _transition(
        self,
        document_id: str,
        status: ProcessingStatus,
        error: str | None = None,
        document_title: str | None = None,
    ) -> Document:
        def apply() -> tuple[ProcessingStatus, Document]:
            previous = self.store.get_document(document_id).status
            updated = self.store.set_status(
                document_id, status, error=error, document_title=document_title
            )
            return previous, updated

        previous, updated = await asyncio.to_thread(apply)
        self._emit(StatusChange(document_id, previous, updated.status, updated.error))
        return updated

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    def _emit(self, change: StatusChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    "status_listener_failed",
                    extra={"document_id": change.document_id},
                )
