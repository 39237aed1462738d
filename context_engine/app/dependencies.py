from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from context_engine.app.settings import settings
from context_engine.chunkstore.base import ChunkStore
from context_engine.chunkstore.inmemory import InMemoryChunkStore
from context_engine.chunkstore.sql import SQLChunkStore
from context_engine.rag.assembler import ContextAssembler
from context_engine.rag.embeddings import (
    EmbeddingConfigError,
    EmbeddingProvider,
    GeminiEmbedder,
    HashEmbedder,
    OpenAIEmbedder,
)
from context_engine.rag.processor import DocumentProcessor
from context_engine.rag.provider import (
    ChunkingProvider,
    HTTPChunkingProvider,
    HTTPQueryEmbedder,
    LocalChunkingProvider,
)
from context_engine.rag.search import SimilaritySearch
from context_engine.rag.session import SessionContextBinder
from context_engine.rag.tokens import build_token_counter


@dataclass(frozen=True)
class ContextEngine:
    """Wired components shared by the HTTP surface."""
    store: ChunkStore
    embedder: EmbeddingProvider
    processor: DocumentProcessor
    search: SimilaritySearch
    assembler: ContextAssembler
    binder: SessionContextBinder


@lru_cache
def get_engine() -> ContextEngine:
    store = build_chunk_store()
    embedder = build_embedder()
    counter = build_token_counter(settings.token_counter, settings.tokenizer_encoding)
    search = SimilaritySearch(store=store)
    processor = DocumentProcessor(
        store=store,
        provider=build_chunking_provider(embedder),
        max_concurrency=settings.max_concurrent_ingestions,
        upload_dir=settings.upload_dir,
    )
    binder = SessionContextBinder(store=store, counter=counter)
    processor.subscribe(binder.handle_status_change)
    assembler = ContextAssembler(
        store=store,
        search=search,
        embedder=embedder,
        counter=counter,
        top_k=settings.retrieval_top_k,
        token_limit=settings.context_token_limit,
        timeout=settings.retrieval_timeout if settings.retrieval_timeout > 0 else None,
    )
    return ContextEngine(
        store=store,
        embedder=embedder,
        processor=processor,
        search=search,
        assembler=assembler,
        binder=binder,
    )


def reset_engine_cache() -> None:
    get_engine.cache_clear()


def build_chunk_store() -> ChunkStore:
    backend = settings.chunk_store_backend.lower().strip()
    if backend == "sql":
        return SQLChunkStore(settings.chunk_store_uri)
    if backend == "memory":
        return InMemoryChunkStore()
    raise ValueError(f"Unsupported chunk store backend: {backend}")


def build_embedder() -> EmbeddingProvider:
    provider = settings.embedding_provider.lower().strip()
    if provider == "hash":
        return HashEmbedder(dimension=settings.embedding_dimension)
    if provider == "openai":
        return OpenAIEmbedder(
            api_key=settings.openai_api_key or "",
            model=settings.openai_embedding_model or "",
            dimension=settings.embedding_dimension,
        )
    if provider in {"gemini", "google"}:
        return GeminiEmbedder(
            api_key=settings.gemini_api_key or "",
            model=settings.gemini_embedding_model or "",
            dimension=settings.embedding_dimension,
        )
    if provider == "http":
        return HTTPQueryEmbedder(
            base_url=settings.processing_base_url,
            dimension=settings.embedding_dimension,
            timeout=settings.processing_timeout,
        )
    raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")


def build_chunking_provider(embedder: EmbeddingProvider) -> ChunkingProvider:
    provider = settings.chunking_provider.lower().strip()
    if provider == "http":
        return HTTPChunkingProvider(
            base_url=settings.processing_base_url,
            timeout=settings.processing_timeout,
        )
    if provider == "local":
        return LocalChunkingProvider(
            embedder=embedder,
            max_tokens=settings.chunk_tokens,
            overlap=settings.chunk_overlap,
            encoding_name=settings.tokenizer_encoding,
            use_tiktoken=not settings.disable_tiktoken,
        )
    raise ValueError(f"Unsupported chunking provider: {provider}")
