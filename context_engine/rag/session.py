from __future__ import annotations

"""Chat sessions and the context items pinned to them."""

import logging
import threading
import uuid
from typing import Iterable

from context_engine.chunkstore.base import ChunkStore
from context_engine.rag.errors import DocumentNotReady, NotFound
from context_engine.rag.tokens import TokenCounter, content_checksum
from context_engine.rag.types import (
    BoundingBox,
    ChatSession,
    ContextItem,
    ContextKind,
    Document,
    ExplicitContext,
    ProcessingStatus,
    ProcessingSummary,
    StatusChange,
)

logger = logging.getLogger(__name__)


class SessionContextBinder:
    """Keep per-session pinned items and per-message attachments.

    Item IDs derive from their content, so pinning the same thing twice is a
    no-op.
    """

    def __init__(self, store: ChunkStore, counter: TokenCounter) -> None:
        self.store = store
        self.counter = counter
        self._sessions: dict[str, ChatSession] = {}
        self._lock = threading.RLock()

    def open_session(self, session_id: str | None = None, title: str = "") -> ChatSession:
        with self._lock:
            key = session_id or uuid.uuid4().hex
            session = self._sessions.get(key)
            if session is None:
                session = ChatSession(session_id=key, title=title)
                self._sessions[key] = session
            return session

    def get_session(self, session_id: str) -> ChatSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound("session", session_id)
        return session

    def close_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def add_item(self, session: ChatSession, item: ContextItem) -> bool:
        """Bind an item; returns False when an item with its ID is already bound."""
        self.store.get_document(item.document_id)
        with self._lock:
            if any(existing.item_id == item.item_id for existing in session.items):
                return False
            session.items.append(item)
        logger.info(
            "session_item_added",
            extra={"session_id": session.session_id, "item_id": item.item_id},
        )
        return True

    def remove_item(self, session: ChatSession, item_id: str) -> bool:
        with self._lock:
            before = len(session.items)
            session.items[:] = [item for item in session.items if item.item_id != item_id]
            return len(session.items) != before

    def clear_all(self, session: ChatSession) -> int:
        """Start a new conversation: drop every item and pending attachment."""
        with self._lock:
            removed = len(session.items) + len(session.attachments)
            session.items.clear()
            session.attachments.clear()
        return removed

    def pin_selection(
        self,
        session: ChatSession,
        document_id: str,
        text: str,
        page_numbers: Iterable[int] = (),
        bounds: Iterable[BoundingBox] = (),
        character_range: tuple[int, int] | None = None,
    ) -> tuple[ContextItem, bool]:
        if not text.strip():
            raise ValueError("Selected text is empty")
        document = self.store.get_document(document_id)
        boxes = tuple(bounds)
        pages = set(page_numbers) | {box.page_number for box in boxes}
        checksum = content_checksum(text)
        item = self._item(
            item_id=f"{document_id}:selection:{checksum}",
            kind=ContextKind.TEXT_SELECTION,
            content=text,
            document=document,
            page_numbers=tuple(sorted(pages)),
            bounding_boxes=boxes,
            character_range=character_range,
        )
        return item, self.add_item(session, item)

    def pin_pages(
        self, session: ChatSession, document_id: str, page_numbers: Iterable[int]
    ) -> tuple[ContextItem, bool]:
        pages = tuple(sorted(set(page_numbers)))
        if not pages:
            raise ValueError("At least one page number is required")
        document = self._completed(document_id)
        wanted = set(pages)
        texts = [
            chunk.text
            for chunk in self.store.chunks_for_document(document_id)
            if wanted & set(chunk.page_numbers)
        ]
        if not texts:
            raise ValueError(f"No text found on pages {list(pages)} of {document_id}")
        item = self._item(
            item_id=f"{document_id}:pages:{','.join(str(page) for page in pages)}",
            kind=ContextKind.PAGE_RANGE,
            content="\n\n".join(texts),
            document=document,
            page_numbers=pages,
        )
        return item, self.add_item(session, item)

    def pin_document(self, session: ChatSession, document_id: str) -> tuple[ContextItem, bool]:
        document = self._completed(document_id)
        chunks = self.store.chunks_for_document(document_id)
        pages = sorted({page for chunk in chunks for page in chunk.page_numbers})
        item = self._item(
            item_id=f"{document_id}:document",
            kind=ContextKind.DOCUMENT,
            content="\n\n".join(chunk.text for chunk in chunks),
            document=document,
            page_numbers=tuple(pages),
        )
        return item, self.add_item(session, item)

    def attach(self, session: ChatSession, context: ExplicitContext) -> bool:
        """Attach context to the next message only."""
        self.store.get_document(context.document_id)
        with self._lock:
            if any(existing.context_id == context.context_id for existing in session.attachments):
                return False
            session.attachments.append(context)
            return True

    def mark_sent(self, session: ChatSession) -> int:
        with self._lock:
            cleared = len(session.attachments)
            session.attachments.clear()
            return cleared

    def detach_document(self, document_id: str) -> int:
        """Remove items and attachments for document_id from every session."""
        removed = 0
        with self._lock:
            for session in self._sessions.values():
                items = [item for item in session.items if item.document_id != document_id]
                attachments = [
                    context
                    for context in session.attachments
                    if context.document_id != document_id
                ]
                removed += len(session.items) - len(items)
                removed += len(session.attachments) - len(attachments)
                session.items[:] = items
                session.attachments[:] = attachments
        if removed:
            logger.info(
                "document_detached",
                extra={"document_id": document_id, "items_removed": removed},
            )
        return removed

    def handle_status_change(self, change: StatusChange) -> None:
        if change.current is None:
            self.detach_document(change.document_id)

    def processing_summary(self) -> ProcessingSummary:
        return self.store.processing_summary()

    def _completed(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document.status != ProcessingStatus.COMPLETED:
            raise DocumentNotReady(document_id, document.status.value)
        return document

    def _item(
        self,
        item_id: str,
        kind: ContextKind,
        content: str,
        document: Document,
        page_numbers: tuple[int, ...] = (),
        bounding_boxes: tuple[BoundingBox, ...] = (),
        character_range: tuple[int, int] | None = None,
    ) -> ContextItem:
        return ContextItem(
            item_id=item_id,
            kind=kind,
            content=content,
            document_id=document.document_id,
            document_title=document.display_title,
            token_count=self.counter.count(content),
            checksum=content_checksum(content),
            page_numbers=page_numbers,
            bounding_boxes=bounding_boxes,
            character_range=character_range,
        )
