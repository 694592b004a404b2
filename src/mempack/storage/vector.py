"""Vector similarity over stored chunk embeddings."""

import logging
import sqlite3
from typing import Optional

import numpy as np

from mempack.models import HybridVectorResult
from mempack.storage.index import IndexStore, source_filter

logger = logging.getLogger(__name__)


class VectorIndex:
    """Cosine similarity search over the ``chunk_vectors`` table.

    By default similarity is computed in-process with numpy. When an
    extension path is configured (for example sqlite-vec), it is loaded
    on every connection and ranking happens in SQL through
    ``vec_distance_cosine``; if that extension cannot be loaded the
    engine reports itself unavailable and search skips the vector pass.
    """

    def __init__(self, store: IndexStore, enabled: bool = True, extension_path: str = ""):
        self.store = store
        self.enabled = enabled
        self.extension_path = extension_path
        self.available: Optional[bool] = None
        self.error: Optional[str] = None

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.store.path, timeout=self.store.BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        if self.extension_path:
            conn.enable_load_extension(True)
            try:
                conn.load_extension(self.extension_path)
            finally:
                conn.enable_load_extension(False)
        return conn

    def is_available(self) -> bool:
        """Check whether vector search can run, caching the answer."""
        if self.available is not None:
            return self.available
        if not self.enabled:
            self.available, self.error = False, "vector search disabled"
            return False
        try:
            conn = self._connect()
        except (sqlite3.Error, AttributeError) as e:
            # AttributeError: interpreter built without extension loading
            self.available, self.error = False, f"vector extension failed to load: {e}"
            logger.warning(f"Vector search unavailable: {self.error}")
            return False
        conn.close()
        self.available, self.error = True, None
        return True

    def dimensions(self) -> int:
        """Width of the stored vectors (0 when none are stored)."""
        with self.store.connection() as conn:
            row = conn.execute(
                """SELECT dims FROM chunk_vectors
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? LIMIT 1""",
                self.store.tenant.params(),
            ).fetchone()
            return int(row["dims"]) if row else 0

    def search(
        self,
        query: np.ndarray,
        limit: int,
        model: str,
        sources: tuple[str, ...] = (),
        path_prefix: str = "",
    ) -> list[HybridVectorResult]:
        """Return the ``limit`` chunks most similar to ``query``."""
        if not self.is_available() or limit <= 0:
            return []
        query = np.asarray(query, dtype=np.float32).reshape(-1)
        if self.extension_path:
            return self._search_sql(query, limit, model, sources, path_prefix)
        return self._search_numpy(query, limit, model, sources, path_prefix)

    def _search_numpy(self, query, limit, model, sources, path_prefix) -> list[HybridVectorResult]:
        clause, params = source_filter("c.", sources, path_prefix)
        with self.store.connection() as conn:
            rows = conn.execute(
                f"""SELECT c.id, c.path, c.source, c.start_line, c.end_line, c.text, v.embedding
                    FROM chunks c JOIN chunk_vectors v ON c.id = v.chunk_id
                    WHERE c.bridge_id = ? AND c.login_id = ? AND c.agent_id = ?
                      AND c.model = ? AND v.dims = ?{clause}""",
                (*self.store.tenant.params(), model, int(query.shape[0]), *params),
            ).fetchall()
        if not rows:
            return []
        matrix = np.vstack([np.frombuffer(row["embedding"], dtype=np.float32) for row in rows])
        scores = self._cosine_similarities(matrix, query)
        order = np.argsort(-scores, kind="stable")[:limit]
        return [self._result(rows[i], float(scores[i])) for i in order]

    def _search_sql(self, query, limit, model, sources, path_prefix) -> list[HybridVectorResult]:
        clause, params = source_filter("c.", sources, path_prefix)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""SELECT c.id, c.path, c.source, c.start_line, c.end_line, c.text,
                           1.0 - vec_distance_cosine(v.embedding, ?) AS score
                    FROM chunks c JOIN chunk_vectors v ON c.id = v.chunk_id
                    WHERE c.bridge_id = ? AND c.login_id = ? AND c.agent_id = ?
                      AND c.model = ? AND v.dims = ?{clause}
                    ORDER BY score DESC LIMIT ?""",
                (query.tobytes(), *self.store.tenant.params(), model, int(query.shape[0]), *params, limit),
            ).fetchall()
        finally:
            conn.close()
        return [self._result(row, float(row["score"])) for row in rows]

    @staticmethod
    def _result(row: sqlite3.Row, score: float) -> HybridVectorResult:
        return HybridVectorResult(
            id=row["id"],
            path=row["path"],
            start_line=int(row["start_line"]),
            end_line=int(row["end_line"]),
            source=row["source"],
            snippet=row["text"],
            vector_score=score,
        )

    @staticmethod
    def _cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        """Cosine similarity of every row of ``matrix`` against ``query``."""
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, dots / norms, 0.0)
        return scores.astype(np.float64)
