from __future__ import annotations

"""Token counting and checksum policies used to budget context."""

import hashlib
import math
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from context_engine.rag.types import BoundingBox, ContextKind, ExplicitContext

_WHITESPACE_RE = re.compile(r"\s+")


class TokenCounter(Protocol):
    """Deterministic token counting policy, monotonic in input length."""

    def count(self, text: str) -> int:
        """Return the number of tokens for text."""
        raise NotImplementedError


@dataclass(frozen=True)
class HeuristicTokenCounter:
    """Character-based estimate: collapsed characters / 4 plus a 10% buffer."""
    characters_per_token: float = 4.0
    buffer: float = 1.1

    def count(self, text: str) -> int:
        """Estimate token count from the whitespace-collapsed length."""
        cleaned = _WHITESPACE_RE.sub(" ", text)
        if not cleaned.strip():
            return 0
        estimated = math.ceil(len(cleaned) / self.characters_per_token)
        return math.ceil(round(estimated * self.buffer, 9))


@dataclass
class TiktokenCounter:
    """Exact token counts from a tiktoken encoding."""
    encoding_name: str = "cl100k_base"
    _encoding: Any = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        import tiktoken

        try:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        except ValueError:
            self._encoding = tiktoken.get_encoding("cl100k_base")

    def count(self, text: str) -> int:
        """Count tokens with the configured encoding."""
        if not text:
            return 0
        return len(self._encoding.encode(text))


def build_token_counter(kind: str, encoding_name: str = "cl100k_base") -> TokenCounter:
    """Return the token counter named by configuration."""
    normalized = kind.lower().strip()
    if normalized in {"", "heuristic", "chars"}:
        return HeuristicTokenCounter()
    if normalized == "tiktoken":
        return TiktokenCounter(encoding_name=encoding_name)
    raise ValueError(f"Unsupported token counter: {kind}")


def content_checksum(text: str) -> str:
    """Return a short stable checksum used for cache validation and dedup."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def make_explicit_context(
    content: str,
    document_id: str,
    document_title: str,
    kind: ContextKind,
    counter: TokenCounter,
    context_id: str | None = None,
    page_numbers: list[int] | tuple[int, ...] = (),
    selection_bounds: list[BoundingBox] | tuple[BoundingBox, ...] = (),
    character_range: tuple[int, int] | None = None,
    extraction_method: str = "manual",
) -> ExplicitContext:
    """Build an explicit context, computing token count and checksum."""
    if kind is ContextKind.SEMANTIC_CHUNK:
        raise ValueError("Semantic chunks are produced by retrieval, not by users")
    return ExplicitContext(
        context_id=context_id or uuid.uuid4().hex,
        document_id=document_id,
        document_title=document_title,
        kind=kind,
        content=content,
        token_count=counter.count(content),
        checksum=content_checksum(content),
        page_numbers=tuple(sorted(set(page_numbers))),
        selection_bounds=tuple(selection_bounds),
        character_range=character_range,
        extraction_method=extraction_method,
    )
