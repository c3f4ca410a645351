"""Fixed-window text chunking by approximate token count."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ContentChunk:
    source_id: str
    index: int
    text: str
    byte_range: tuple[int, int]

    @property
    def chunk_id(self) -> str:
        return f"{self.source_id}__chunk_{self.index}"


def chunk_text(
    text: str,
    max_tokens: int = 3000,
    chars_per_token: int = 4,
    source_id: str = "",
) -> list[ContentChunk]:
    """Split ``text`` into ordered, non-overlapping windows that cover it exactly.

    Each window holds at most ``max_tokens * chars_per_token`` characters.
    ``byte_range`` is the (start, end) UTF-8 byte offset pair into ``text``,
    so it differs from the character offsets once a diff holds non-ASCII.
    """
    if max_tokens < 1:
        raise ValueError(f"max_tokens must be >= 1, got {max_tokens}")
    if chars_per_token < 1:
        raise ValueError(f"chars_per_token must be >= 1, got {chars_per_token}")

    size = max_tokens * chars_per_token
    chunks: list[ContentChunk] = []
    offset = 0
    for i, start in enumerate(range(0, len(text), size)):
        piece = text[start:start + size]
        end = offset + len(piece.encode("utf-8"))
        chunks.append(ContentChunk(source_id=source_id, index=i, text=piece, byte_range=(offset, end)))
        offset = end
    return chunks
