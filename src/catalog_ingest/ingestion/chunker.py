"""Text chunking."""

from __future__ import annotations

from typing import List

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ..models import TextChunk

# Whitespace boundaries first, hard character cuts for over-long tokens.
SEPARATORS = [" ", ""]


class TextChunker:
    """Split composed item text into overlapping, bounded windows.

    The output is a pure function of ``(text, chunk_size, chunk_overlap)``;
    chunk indices feed the deterministic document identifier, so the same
    input must always yield the same sequence.

    Parameters
    ----------
    chunk_size:
        Maximum number of characters per chunk.
    chunk_overlap:
        Number of characters shared by consecutive chunks.
    """

    def __init__(self, chunk_size: int = 512, chunk_overlap: int = 100) -> None:
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=len,
            separators=SEPARATORS,
        )

    def split(self, text: str, item_id: int) -> List[TextChunk]:
        """Return the ordered chunks for *text*; empty text yields no chunks."""
        if not text or not text.strip():
            return []
        pieces = [piece for piece in self._splitter.split_text(text) if piece.strip()]
        return [
            TextChunk(chunk_index=index, text=piece, item_id=item_id)
            for index, piece in enumerate(pieces)
        ]
