from __future__ import annotations

"""Text normalization and page-aware token chunking."""

import re
from dataclasses import dataclass
from typing import Any

from context_engine.rag.types import BoundingBox

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class TextBlock:
    """Block of extracted text with its page location."""
    page_number: int
    text: str
    bbox: BoundingBox | None = None


@dataclass(frozen=True)
class ChunkDraft:
    """Chunk text and provenance before embedding."""
    text: str
    bounding_boxes: tuple[BoundingBox, ...]
    page_numbers: tuple[int, ...]


def normalize_text(text: str) -> str:
    """Normalize whitespace and line endings in text."""
    return _WHITESPACE_RE.sub(" ", text.replace("\r\n", "\n")).strip()


class _Tokenizer:
    """Encode/decode with tiktoken, or with whitespace words when disabled."""

    def __init__(self, encoding_name: str, use_tiktoken: bool) -> None:
        self._encoding: Any = None
        if use_tiktoken:
            import tiktoken

            try:
                self._encoding = tiktoken.get_encoding(encoding_name)
            except ValueError:
                self._encoding = tiktoken.get_encoding("cl100k_base")

    def encode(self, text: str) -> list[Any]:
        if self._encoding is None:
            return text.split()
        return self._encoding.encode(text)

    def decode(self, tokens: list[Any]) -> str:
        if self._encoding is None:
            return " ".join(tokens)
        return self._encoding.decode(tokens)


def _windows(tokens: list[Any], max_tokens: int, overlap: int) -> list[list[Any]]:
    if overlap >= max_tokens:
        overlap = max(0, max_tokens // 4)
    windows: list[list[Any]] = []
    start = 0
    length = len(tokens)
    while start < length:
        end = min(length, start + max_tokens)
        windows.append(tokens[start:end])
        if end >= length:
            break
        start = max(0, end - overlap)
    return windows


def chunk_blocks(
    blocks: list[TextBlock],
    max_tokens: int,
    overlap: int,
    encoding_name: str = "cl100k_base",
    use_tiktoken: bool = True,
) -> list[ChunkDraft]:
    """Group consecutive blocks into chunks of at most max_tokens tokens.

    Blocks are never merged across the limit; a single block longer than the
    limit is split into overlapping windows that all carry the block's box.
    """
    tokenizer = _Tokenizer(encoding_name, use_tiktoken)
    drafts: list[ChunkDraft] = []
    pending: list[TextBlock] = []
    pending_tokens = 0

    def flush() -> None:
        nonlocal pending, pending_tokens
        if pending:
            text = " ".join(block.text for block in pending).strip()
            if text:
                drafts.append(_draft(text, pending))
        pending = []
        pending_tokens = 0

    for block in blocks:
        text = normalize_text(block.text)
        if not text:
            continue
        cleaned = TextBlock(page_number=block.page_number, text=text, bbox=block.bbox)
        tokens = tokenizer.encode(text)
        if max_tokens > 0 and len(tokens) > max_tokens:
            flush()
            for window in _windows(tokens, max_tokens, overlap):
                piece = tokenizer.decode(window).strip()
                if piece:
                    drafts.append(_draft(piece, [cleaned]))
            continue
        if max_tokens > 0 and pending_tokens + len(tokens) > max_tokens:
            flush()
        pending.append(cleaned)
        pending_tokens += len(tokens)
    flush()
    return drafts


def _draft(text: str, blocks: list[TextBlock]) -> ChunkDraft:
    boxes = tuple(block.bbox for block in blocks if block.bbox is not None)
    pages = tuple(sorted({block.page_number for block in blocks}))
    return ChunkDraft(text=text, bounding_boxes=boxes, page_numbers=pages)
