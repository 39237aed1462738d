from __future__ import annotations

"""Prometheus collectors for ingestion, retrieval and search."""

from prometheus_client import Counter, Histogram

INGESTION_OUTCOMES = Counter(
    "context_ingestions_total",
    "Document processing runs by outcome",
    ["status"],
)
RETRIEVAL_DEGRADED = Counter(
    "context_retrieval_degraded_total",
    "Context builds that fell back to explicit-only context",
    ["reason"],
)
SEARCH_LATENCY = Histogram(
    "context_search_duration_seconds",
    "Similarity scan duration in seconds",
)
