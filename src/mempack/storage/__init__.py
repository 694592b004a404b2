"""SQLite-backed storage: content store, index, vectors and embedding cache."""

from mempack.storage.cache import EmbeddingCache
from mempack.storage.content import ContentStore
from mempack.storage.index import CommitStats, IndexStore, IndexTransaction, new_generation
from mempack.storage.store import SQLiteStore
from mempack.storage.vector import VectorIndex

__all__ = [
    "CommitStats",
    "ContentStore",
    "EmbeddingCache",
    "IndexStore",
    "IndexTransaction",
    "SQLiteStore",
    "VectorIndex",
    "new_generation",
]
