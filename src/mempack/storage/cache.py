"""Bounded embedding cache keyed by content hash and provider signature."""

import logging
import time
from pathlib import Path
from typing import Optional

import numpy as np

from mempack.storage.store import SQLiteStore

logger = logging.getLogger(__name__)


def _next_stamp(conn) -> int:
    """Millisecond clock that never repeats or runs backwards within one cache."""
    latest = conn.execute("SELECT MAX(updated_at) FROM embedding_cache").fetchone()[0]
    now = int(time.time() * 1000)
    return now if latest is None else max(now, int(latest) + 1)


class EmbeddingCache(SQLiteStore):
    """Persistent cache from (content hash, provider signature) to vector.

    Vectors are stored as float32 bytes and returned as float32 arrays,
    so a hit matches the provider output byte for byte.

    Args:
        path: SQLite database path
        enabled: When False every lookup misses and writes are dropped
        max_entries: Capacity bound; 0 means unbounded
    """

    def __init__(self, path: Path | str, enabled: bool = True, max_entries: int = 0):
        super().__init__(path)
        self.enabled = enabled
        self.max_entries = max(0, max_entries)

    def get(self, content_hash: str, provider_signature: str) -> Optional[np.ndarray]:
        """Return the cached vector, or None on a miss."""
        return self.get_many([content_hash], provider_signature).get(content_hash)

    def get_many(self, content_hashes: list[str], provider_signature: str) -> dict[str, np.ndarray]:
        """Look up several hashes at once. Missing hashes are absent from the result."""
        if not self.enabled or not content_hashes:
            return {}
        unique = list(dict.fromkeys(content_hashes))
        found: dict[str, np.ndarray] = {}
        with self.connection() as conn:
            # SQLite caps bound parameters; stay well under the limit
            for start in range(0, len(unique), 500):
                batch = unique[start:start + 500]
                placeholders = ",".join("?" * len(batch))
                cursor = conn.execute(
                    f"""SELECT content_hash, embedding FROM embedding_cache
                        WHERE provider_signature = ? AND content_hash IN ({placeholders})""",
                    (provider_signature, *batch),
                )
                for row in cursor:
                    found[row["content_hash"]] = np.frombuffer(row["embedding"], dtype=np.float32).copy()
            if found and self.max_entries > 0:
                # A hit counts as use, so eviction drops the least recently used
                stamp = _next_stamp(conn)
                conn.executemany(
                    """UPDATE embedding_cache SET updated_at = ?
                       WHERE provider_signature = ? AND content_hash = ?""",
                    [(stamp, provider_signature, content_hash) for content_hash in found],
                )
        return found

    def put(self, content_hash: str, provider_signature: str, vector: np.ndarray) -> None:
        self.put_many({content_hash: vector}, provider_signature)

    def put_many(self, vectors: dict[str, np.ndarray], provider_signature: str) -> None:
        """Insert or refresh entries, then enforce the capacity bound."""
        if not self.enabled or not vectors:
            return
        with self.connection() as conn:
            now = _next_stamp(conn)
            conn.executemany(
                """INSERT INTO embedding_cache
                   (provider_signature, content_hash, dims, embedding, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (provider_signature, content_hash)
                   DO UPDATE SET dims=excluded.dims, embedding=excluded.embedding,
                       updated_at=excluded.updated_at""",
                [
                    (
                        provider_signature,
                        content_hash,
                        int(np.asarray(vector).shape[-1]),
                        np.asarray(vector, dtype=np.float32).tobytes(),
                        now,
                    )
                    for content_hash, vector in vectors.items()
                ],
            )
        self.prune()

    def count(self) -> int:
        with self.connection() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0])

    def prune(self) -> int:
        """Evict the least recently used entries beyond ``max_entries``. Returns evicted count."""
        if self.max_entries <= 0:
            return 0
        with self.connection() as conn:
            total = int(conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0])
            excess = total - self.max_entries
            if excess <= 0:
                return 0
            conn.execute(
                """DELETE FROM embedding_cache WHERE rowid IN (
                       SELECT rowid FROM embedding_cache
                       ORDER BY updated_at ASC, rowid ASC LIMIT ?
                   )""",
                (excess,),
            )
        logger.debug(f"Evicted {excess} embedding cache entries")
        return excess
