from __future__ import annotations

"""Embedding providers shared by ingestion and query embedding."""

import asyncio
import hashlib
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from context_engine.rag.errors import DimensionMismatch

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class EmbeddingError(RuntimeError):
    """Raised when embeddings fail or are invalid."""
    pass


class EmbeddingConfigError(RuntimeError):
    """Raised when embedding configuration is invalid."""
    pass


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""
    dimension: int

    def embed(self, text: str) -> list[float]:
        """Return an embedding vector for the provided text."""
        raise NotImplementedError


def validate_vector(vector: list[float], dimension: int) -> list[float]:
    """Validate embedding length and values."""
    if len(vector) != dimension:
        raise DimensionMismatch(expected=dimension, actual=len(vector))
    cleaned: list[float] = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EmbeddingError("Embedding contains a non-numeric value")
        if not math.isfinite(value):
            raise EmbeddingError("Embedding contains a non-finite value")
        cleaned.append(float(value))
    return cleaned


async def embed_text(provider: EmbeddingProvider, text: str) -> list[float]:
    """Embed text without blocking the event loop."""
    native = getattr(provider, "aembed", None)
    if native is not None:
        return await native(text)
    return await asyncio.to_thread(provider.embed, text)


def embed_many(provider: EmbeddingProvider, texts: list[str]) -> list[list[float]]:
    """Embed several texts, batching when the provider supports it."""
    if not texts:
        return []
    batch = getattr(provider, "embed_batch", None)
    if batch is not None:
        return batch(texts)
    return [provider.embed(text) for text in texts]


@dataclass
class HashEmbedder:
    """Deterministic hash-based embedder for testing or offline use."""
    dimension: int = 256

    def __post_init__(self) -> None:
        if self.dimension <= 0:
            raise EmbeddingConfigError("EMBEDDING_DIMENSION must be greater than zero")

    def embed(self, text: str) -> list[float]:
        """Embed text using token hashing and L2 normalization."""
        tokens = _TOKEN_RE.findall(text.lower())
        vector = [0.0] * self.dimension
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dimension
            vector[idx] += 1.0
        return validate_vector(self._l2_normalize(vector), self.dimension)

    def _l2_normalize(self, vector: list[float]) -> list[float]:
        """Normalize vector magnitude to 1.0."""
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0.0:
            return vector
        return [value / norm for value in vector]


def resolve_openai_dimension(model: str) -> int | None:
    """Return expected dimension for OpenAI embedding model."""
    mapping = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }
    return mapping.get(model)


@dataclass
class OpenAIEmbedder:
    """Embedding provider using OpenAI embeddings API."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate OpenAI configuration and create a client."""
        if not self.api_key:
            raise EmbeddingConfigError("OPENAI_API_KEY is required for OpenAIEmbedder")
        if not self.model:
            raise EmbeddingConfigError("OPENAI_EMBEDDING_MODEL is required for OpenAIEmbedder")
        resolved = resolve_openai_dimension(self.model)
        if self.dimension <= 0:
            if resolved is None:
                raise EmbeddingConfigError(
                    "EMBEDDING_DIMENSION must be set for OpenAI embeddings when model is unknown"
                )
            self.dimension = resolved
        elif resolved is not None and self.dimension != resolved:
            raise EmbeddingConfigError(
                f"EMBEDDING_DIMENSION should be {resolved} for model {self.model}"
            )
        try:
            from openai import OpenAI
        except ImportError as exc:
            raise EmbeddingError("openai package is required for OpenAIEmbedder") from exc
        self.client = OpenAI(api_key=self.api_key)

    def embed(self, text: str) -> list[float]:
        """Embed text using the OpenAI embeddings API."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one API call, preserving order."""
        response = self.client.embeddings.create(model=self.model, input=texts)
        ordered = sorted(response.data, key=lambda item: item.index)
        return [validate_vector(list(item.embedding), self.dimension) for item in ordered]


@dataclass
class GeminiEmbedder:
    """Embedding provider using Gemini embeddings API."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate Gemini configuration and create a client."""
        if not self.api_key:
            raise EmbeddingConfigError("GEMINI_API_KEY is required for GeminiEmbedder")
        if not self.model:
            raise EmbeddingConfigError("GEMINI_EMBEDDING_MODEL is required for GeminiEmbedder")
        if self.dimension <= 0:
            raise EmbeddingConfigError("EMBEDDING_DIMENSION must be set for Gemini embeddings")
        try:
            import google.generativeai as genai
        except ImportError as exc:
            raise EmbeddingError("google-generativeai package is required for GeminiEmbedder") from exc
        genai.configure(api_key=self.api_key)
        self.client = genai

    def embed(self, text: str) -> list[float]:
        """Embed text using the Gemini embeddings API."""
        result = self.client.embed_content(model=self.model, content=text)
        embedding = None
        if isinstance(result, dict):
            embedding = result.get("embedding")
        if embedding is None:
            embedding = getattr(result, "embedding", None)
        if embedding is None:
            raise EmbeddingError("Gemini embedding response missing embedding vector")
        return validate_vector(list(embedding), self.dimension)
