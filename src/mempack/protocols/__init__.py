"""Protocol definitions for extensible components."""

from mempack.protocols.chunker import ChunkingStrategy
from mempack.protocols.embedder import EmbeddingProvider, ProviderKind
from mempack.protocols.ingester import Ingester

__all__ = ["Ingester", "EmbeddingProvider", "ProviderKind", "ChunkingStrategy"]
