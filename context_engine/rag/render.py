from __future__ import annotations

"""Render assembled context with provenance headers for the chat model."""

from dataclasses import dataclass

from context_engine.rag.types import ContextBundle, ContextKind, ContextSource, RetrievedContext

_SEPARATOR = "=" * 50


@dataclass(frozen=True)
class Citation:
    """Provenance of one rendered context piece."""
    label: str
    document_id: str
    document_title: str
    kind: ContextKind
    page_numbers: tuple[int, ...]
    score: float | None = None


def format_pages(pages: tuple[int, ...] | list[int]) -> str:
    """Format page numbers as "Page 3", "Pages 3-5" or "Pages 1, 4-6"."""
    ordered = sorted(set(pages))
    if not ordered:
        return ""
    if len(ordered) == 1:
        return f"Page {ordered[0]}"
    spans: list[str] = []
    start = prev = ordered[0]
    for page in ordered[1:] + [None]:
        if page is not None and page == prev + 1:
            prev = page
            continue
        spans.append(str(start) if start == prev else f"{start}-{prev}")
        if page is not None:
            start = prev = page
    return "Pages " + ", ".join(spans)


def build_citations(contexts: tuple[ContextSource, ...] | list[ContextSource]) -> list[Citation]:
    """Build numbered citations in render order."""
    citations: list[Citation] = []
    for idx, context in enumerate(contexts, start=1):
        citations.append(
            Citation(
                label=f"[{idx}]",
                document_id=context.document_id,
                document_title=context.document_title,
                kind=context.kind,
                page_numbers=tuple(context.page_numbers),
                score=context.score if isinstance(context, RetrievedContext) else None,
            )
        )
    return citations


def _header(citation: Citation, context: ContextSource) -> str:
    parts = [f"{citation.label} Document: {citation.document_title}", citation.kind.display_name]
    pages = format_pages(citation.page_numbers)
    if pages:
        parts.append(pages)
    character_range = getattr(context, "character_range", None)
    if citation.kind == ContextKind.TEXT_SELECTION and character_range is not None:
        parts.append(f"Characters {character_range[0]}-{character_range[1]}")
    if citation.score is not None:
        parts.append(f"Score {citation.score:.3f}")
    return " | ".join(parts)


def render_context(bundle: ContextBundle, user_message: str) -> str:
    """Render every context piece under its provenance header, then the query."""
    sections: list[str] = []
    for citation, context in zip(build_citations(bundle.contexts), bundle.contexts):
        sections.append(f"{_header(citation, context)}\n{context.content}")
    if not sections:
        return f"User Query: {user_message}"
    body = "\n\n".join(sections)
    return f"{body}\n\n{_SEPARATOR}\n\nUser Query: {user_message}"
