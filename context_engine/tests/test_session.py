from __future__ import annotations

import pytest

from context_engine.chunkstore.inmemory import InMemoryChunkStore
from context_engine.rag.errors import DocumentNotReady, NotFound
from context_engine.rag.session import SessionContextBinder
from context_engine.rag.tokens import HeuristicTokenCounter, make_explicit_context
from context_engine.rag.types import (
    BoundingBox,
    Chunk,
    ContextItem,
    ContextKind,
    Document,
    ProcessingStatus,
    StatusChange,
)


def _binder() -> tuple[InMemoryChunkStore, SessionContextBinder]:
    store = InMemoryChunkStore()
    store.add_document(Document(document_id="doc", title="Handbook", source_path="h.pdf"))
    store.put(
        "doc",
        [
            Chunk(document_id="doc", index=0, text="Vacation policy.", embedding=(1.0,), pages=(1,)),
            Chunk(document_id="doc", index=1, text="Expense policy.", embedding=(1.0,), pages=(2,)),
            Chunk(document_id="doc", index=2, text="Travel policy.", embedding=(1.0,), pages=(3,)),
        ],
    )
    store.set_status("doc", ProcessingStatus.PROCESSING)
    store.set_status("doc", ProcessingStatus.COMPLETED)
    store.add_document(Document(document_id="draft", title="Draft", source_path="d.pdf"))
    return store, SessionContextBinder(store, HeuristicTokenCounter())


def test_add_item_is_idempotent() -> None:
    _, binder = _binder()
    session = binder.open_session("s1")
    item = ContextItem(
        item_id="pin-1",
        kind=ContextKind.TEXT_SELECTION,
        content="Vacation policy.",
        document_id="doc",
        document_title="Handbook",
        token_count=5,
        checksum="abc",
        page_numbers=(1,),
    )

    assert binder.add_item(session, item) is True
    assert binder.add_item(session, item) is False
    assert len(binder.get_session("s1").items) == 1


def test_add_item_for_unknown_document_raises() -> None:
    _, binder = _binder()
    session = binder.open_session()
    item = ContextItem(
        item_id="ghost",
        kind=ContextKind.DOCUMENT,
        content="?",
        document_id="missing",
        document_title="?",
        token_count=1,
        checksum="0",
    )

    with pytest.raises(NotFound):
        binder.add_item(session, item)
    assert session.items == []


def test_pin_helpers_derive_stable_ids() -> None:
    _, binder = _binder()
    session = binder.open_session("s1")

    selection, added = binder.pin_selection(
        session,
        "doc",
        "Expense policy.",
        bounds=[BoundingBox(page_number=2, left=0, top=10, right=100, bottom=0)],
    )
    assert added
    assert selection.page_numbers == (2,)
    assert binder.pin_selection(session, "doc", "Expense policy.")[1] is False

    pages, _ = binder.pin_pages(session, "doc", [3, 1])
    assert pages.kind == ContextKind.PAGE_RANGE
    assert pages.page_numbers == (1, 3)
    assert pages.content == "Vacation policy.\n\nTravel policy."

    document, _ = binder.pin_document(session, "doc")
    assert document.page_numbers == (1, 2, 3)
    assert [item.kind for item in session.items] == [
        ContextKind.TEXT_SELECTION,
        ContextKind.PAGE_RANGE,
        ContextKind.DOCUMENT,
    ]


def test_pin_document_requires_completed_document() -> None:
    _, binder = _binder()
    session = binder.open_session()

    with pytest.raises(DocumentNotReady):
        binder.pin_document(session, "draft")


def test_clear_all_starts_a_new_conversation() -> None:
    _, binder = _binder()
    session = binder.open_session()
    binder.pin_pages(session, "doc", [1])
    binder.attach(
        session,
        make_explicit_context(
            "Travel policy.", "doc", "Handbook", ContextKind.TEXT_SELECTION, HeuristicTokenCounter()
        ),
    )

    assert binder.clear_all(session) == 2
    assert session.items == []
    assert session.attachments == []


def test_attachments_are_cleared_after_send() -> None:
    _, binder = _binder()
    session = binder.open_session()
    binder.pin_pages(session, "doc", [2])
    attachment = make_explicit_context(
        "Travel policy.", "doc", "Handbook", ContextKind.TEXT_SELECTION, HeuristicTokenCounter()
    )
    assert binder.attach(session, attachment) is True
    assert binder.attach(session, attachment) is False

    explicit = session.explicit_contexts()
    assert [context.kind for context in explicit] == [
        ContextKind.PAGE_RANGE,
        ContextKind.TEXT_SELECTION,
    ]
    assert binder.mark_sent(session) == 1
    assert len(session.explicit_contexts()) == 1


def test_removed_document_is_detached_from_sessions() -> None:
    _, binder = _binder()
    first = binder.open_session("a")
    second = binder.open_session("b")
    binder.pin_document(first, "doc")
    binder.pin_pages(second, "doc", [2])

    binder.handle_status_change(StatusChange("doc", ProcessingStatus.COMPLETED, None))

    assert first.items == []
    assert second.items == []


def test_processing_summary_counts_documents() -> None:
    _, binder = _binder()

    summary = binder.processing_summary()

    assert summary.total == 2
    assert summary.completed == 1
    assert summary.pending == 1


def test_unknown_session_raises_not_found() -> None:
    _, binder = _binder()
    with pytest.raises(NotFound):
        binder.get_session("nope")
    assert binder.close_session("nope") is False
