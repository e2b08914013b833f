"""Word-boundary chunking for tenant documents.

Text is split on whitespace and words are packed greedily into chunks of at
most ``max_size`` characters, joined by single spaces. Words are never split:
a single word longer than the bound becomes its own oversized chunk.

Chunking is pure, so the same text and bound always produce the same chunks
(and therefore the same vector ids downstream).
"""

import logging
from typing import Optional

from schemas.document import Document
from schemas.settings import DEFAULT_MAX_CHUNK_SIZE
from vectorstore.utils import make_vector_id

logger = logging.getLogger(__name__)


def chunk_text(text: str, max_size: int) -> list[str]:
    """Split ``text`` into ordered chunks no longer than ``max_size`` characters.

    Empty or whitespace-only text yields a single empty chunk.
    """
    if max_size < 1:
        raise ValueError(f"max_size must be positive, got {max_size}")

    chunks: list[str] = []
    current = ""
    for word in text.split():
        if not current:
            current = word
        elif len(current) + 1 + len(word) > max_size:
            chunks.append(current)
            current = word
        else:
            current = f"{current} {word}"
    chunks.append(current)
    return chunks


class RawChunk:
    """Intermediate chunk representation before embedding."""

    __slots__ = ("id", "text", "client_id", "source", "scope_id", "scope_url", "chunk_index")

    def __init__(
        self,
        text: str,
        client_id: str,
        source: str,
        chunk_index: int,
        scope_id: Optional[str] = None,
        scope_url: Optional[str] = None,
    ):
        self.text = text
        self.client_id = client_id
        self.source = source
        self.chunk_index = chunk_index
        self.scope_id = scope_id
        self.scope_url = scope_url
        self.id = make_vector_id(client_id, source, chunk_index, scope_id)

    def __repr__(self) -> str:
        return f"RawChunk(id={self.id!r}, len={len(self.text)})"


class Chunker:
    """Turns a Document into indexed RawChunks."""

    def __init__(self, max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE):
        if max_chunk_size < 1:
            raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
        self.max_chunk_size = max_chunk_size

    def chunk_document(self, document: Document) -> list[RawChunk]:
        texts = chunk_text(document.text, self.max_chunk_size)
        oversized = sum(1 for t in texts if len(t) > self.max_chunk_size)
        if oversized:
            logger.warning(
                "[%s] %s: %d single-word chunk(s) exceed %d chars",
                document.client_id, document.source, oversized, self.max_chunk_size,
            )
        return [
            RawChunk(
                text=text,
                client_id=document.client_id,
                source=document.source,
                chunk_index=i,
                scope_id=document.scope_id,
                scope_url=document.scope_url,
            )
            for i, text in enumerate(texts)
        ]
