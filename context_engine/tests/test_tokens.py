from __future__ import annotations

import pytest

from context_engine.rag.render import format_pages
from context_engine.rag.tokens import (
    HeuristicTokenCounter,
    build_token_counter,
    content_checksum,
    make_explicit_context,
)
from context_engine.rag.types import ContextKind


def test_heuristic_counter_collapses_whitespace() -> None:
    counter = HeuristicTokenCounter()

    assert counter.count("") == 0
    assert counter.count("   \n ") == 0
    assert counter.count("abcd") == 2
    assert counter.count("ab   cd") == counter.count("ab cd")
    assert counter.count("x" * 400) == 110


def test_heuristic_counter_is_monotonic() -> None:
    counter = HeuristicTokenCounter()
    counts = [counter.count("y" * length) for length in range(0, 200, 7)]

    assert counts == sorted(counts)


def test_checksum_is_short_and_stable() -> None:
    assert content_checksum("policy") == content_checksum("policy")
    assert content_checksum("policy") != content_checksum("Policy")
    assert len(content_checksum("policy")) == 16


def test_make_explicit_context_rejects_semantic_chunks() -> None:
    counter = HeuristicTokenCounter()
    context = make_explicit_context(
        "Selected words", "doc", "Doc", ContextKind.TEXT_SELECTION, counter, page_numbers=[3, 2, 3]
    )

    assert context.page_numbers == (2, 3)
    assert context.token_count == counter.count("Selected words")
    with pytest.raises(ValueError):
        make_explicit_context("x", "doc", "Doc", ContextKind.SEMANTIC_CHUNK, counter)


def test_unknown_token_counter_is_rejected() -> None:
    assert isinstance(build_token_counter("heuristic"), HeuristicTokenCounter)
    with pytest.raises(ValueError):
        build_token_counter("bytes")


def test_format_pages_compresses_runs() -> None:
    assert format_pages((5,)) == "Page 5"
    assert format_pages((1, 2, 3, 7, 9, 10)) == "Pages 1-3, 7, 9-10"
    assert format_pages(()) == ""
