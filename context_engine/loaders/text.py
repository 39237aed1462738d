from __future__ import annotations

"""Plain text loader for ingestion."""

from context_engine.loaders.chunking import TextBlock

_PAGE_BREAK = "\f"


def load_text_bytes(data: bytes) -> list[TextBlock]:
    """Split plain text into paragraph blocks; form feeds start a new page."""
    content = data.decode("utf-8", errors="ignore")
    blocks: list[TextBlock] = []
    for page_index, page in enumerate(content.split(_PAGE_BREAK)):
        for paragraph in page.replace("\r\n", "\n").split("\n\n"):
            if paragraph.strip():
                blocks.append(TextBlock(page_number=page_index + 1, text=paragraph))
    return blocks
