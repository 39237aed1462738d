from __future__ import annotations

import os
from dataclasses import dataclass

try:
    from dotenv import load_dotenv
except ImportError:  # pragma: no cover - optional in minimal setups
    load_dotenv = None

if load_dotenv is not None:
    load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    chunk_store_backend: str = os.getenv("RAG_CHUNK_STORE", "memory")
    chunk_store_uri: str = os.getenv("RAG_CHUNK_STORE_URI", "sqlite:///context_engine.db")
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "hash")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "256"))
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_embedding_model: str | None = os.getenv("OPENAI_EMBEDDING_MODEL")
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_embedding_model: str | None = os.getenv("GEMINI_EMBEDDING_MODEL")
    chunking_provider: str = os.getenv("RAG_CHUNKING_PROVIDER", "local")
    processing_base_url: str = os.getenv("RAG_PROCESSING_BASE_URL", "http://localhost:8001")
    processing_timeout: float = float(os.getenv("RAG_PROCESSING_TIMEOUT", "120"))
    chunk_tokens: int = int(os.getenv("RAG_CHUNK_TOKENS", "400"))
    chunk_overlap: int = int(os.getenv("RAG_CHUNK_OVERLAP", "40"))
    tokenizer_encoding: str = os.getenv("RAG_TOKENIZER_ENCODING", "cl100k_base")
    disable_tiktoken: bool = _env_flag("RAG_DISABLE_TIKTOKEN", "false")
    token_counter: str = os.getenv("RAG_TOKEN_COUNTER", "heuristic")
    retrieval_top_k: int = int(os.getenv("RAG_RETRIEVAL_TOP_K", "5"))
    context_token_limit_raw: str = os.getenv("RAG_CONTEXT_TOKEN_LIMIT", "8000")
    retrieval_timeout: float = float(os.getenv("RAG_RETRIEVAL_TIMEOUT", "10"))
    max_concurrent_ingestions: int = int(os.getenv("RAG_MAX_CONCURRENT_INGESTIONS", "2"))
    file_max_bytes: int = int(os.getenv("RAG_FILE_MAX_BYTES", "52428800"))
    upload_dir: str = os.getenv("RAG_UPLOAD_DIR", "uploads")
    metrics_enabled: bool = _env_flag("RAG_METRICS_ENABLED", "true")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def context_token_limit(self) -> int | None:
        """Configured budget; empty or non-positive disables the limit."""
        raw = self.context_token_limit_raw.strip()
        if not raw:
            return None
        value = int(raw)
        return value if value > 0 else None


settings = Settings()
