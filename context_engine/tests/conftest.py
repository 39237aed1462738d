from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("GEMINI_API_KEY", None)
os.environ.setdefault("RAG_CHUNK_STORE", "memory")
os.environ.setdefault("EMBEDDING_PROVIDER", "hash")
os.environ.setdefault("EMBEDDING_DIMENSION", "256")
os.environ.setdefault("RAG_CHUNKING_PROVIDER", "local")
os.environ.setdefault("RAG_TOKEN_COUNTER", "heuristic")
os.environ.setdefault("RAG_DISABLE_TIKTOKEN", "true")
os.environ.setdefault("RAG_UPLOAD_DIR", tempfile.mkdtemp(prefix="context-engine-uploads-"))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
