from __future__ import annotations

"""PDF text extraction with page and block provenance."""

import re
from dataclasses import dataclass, field
from typing import Any

from context_engine.loaders.chunking import TextBlock
from context_engine.rag.types import BoundingBox


class PDFLoaderError(RuntimeError):
    """Raised when PDF loading fails."""
    pass


_WHITESPACE_RE = re.compile(r"\s+")
_HYPHEN_BREAK_RE = re.compile(r"(\w)-\n(\w)")
_TEXT_BLOCK = 0


@dataclass(frozen=True)
class PDFContent:
    """Extracted PDF blocks plus document-level metadata."""
    title: str | None
    page_count: int
    blocks: list[TextBlock] = field(default_factory=list)


def _clean_pdf_text(text: str) -> str:
    """Join hyphenated line breaks and collapse whitespace."""
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n")
    cleaned = _HYPHEN_BREAK_RE.sub(r"\1\2", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def _extract(reader: Any) -> PDFContent:
    blocks: list[TextBlock] = []
    for page_index, page in enumerate(reader):
        page_number = page_index + 1
        for x0, y0, x1, y1, text, _block_no, block_type in page.get_text("blocks"):
            if block_type != _TEXT_BLOCK:
                continue
            cleaned = _clean_pdf_text(text or "")
            if not cleaned:
                continue
            blocks.append(
                TextBlock(
                    page_number=page_number,
                    text=cleaned,
                    bbox=BoundingBox(
                        page_number=page_number,
                        left=float(x0),
                        top=float(y0),
                        right=float(x1),
                        bottom=float(y1),
                        coord_origin="TOPLEFT",
                    ),
                )
            )
    metadata = reader.metadata or {}
    title = str(metadata.get("title") or "").strip() or None
    return PDFContent(title=title, page_count=reader.page_count, blocks=blocks)


def load_pdf_bytes(data: bytes) -> PDFContent:
    """Load a PDF from bytes and return its text blocks."""
    try:
        import fitz
    except ImportError as exc:
        raise PDFLoaderError("PyMuPDF is required to load PDF files") from exc

    try:
        reader = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise PDFLoaderError(f"Unable to open PDF: {exc}") from exc
    try:
        return _extract(reader)
    finally:
        reader.close()
