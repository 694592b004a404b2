"""Protocol for text chunking strategies."""

from typing import Protocol, runtime_checkable

from mempack.models import Chunk


@runtime_checkable
class ChunkingStrategy(Protocol):
    """Protocol for text chunking strategies.

    Implementations must be deterministic: the same text and settings
    always produce the same boundaries, or cached embeddings stop matching.
    """

    def chunk(self, text: str, file_path: str) -> list[Chunk]:
        """Split text into line-addressed chunks."""
        ...
