"""Chunk index: relational rows, FTS5 lexical index and vectors."""

import itertools
import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import numpy as np

from mempack.errors import IndexCommitError
from mempack.models import Chunk, Document, HybridKeywordResult, SearchResult, SessionRecord, Tenant
from mempack.storage.schema import FTS_SCHEMA
from mempack.storage.store import SQLiteStore

logger = logging.getLogger(__name__)

_generation_seq = itertools.count()

# Row window for the lexical scan fallback
SCAN_MIN_ROWS = 200
SCAN_MAX_ROWS = 1000


def new_generation() -> str:
    """Return a fresh generation tag that sorts after every earlier one."""
    return f"{int(time.time() * 1000):015d}{next(_generation_seq) % 10000:04d}"


def chunk_id(generation: str) -> str:
    return f"{generation}:{uuid.uuid4().hex}"


def source_filter(column: str, sources: tuple[str, ...], path_prefix: str) -> tuple[str, list]:
    """Build an optional ``AND ...`` clause restricting source and path."""
    clause = ""
    params: list = []
    if sources:
        clause += f" AND {column}source IN ({','.join('?' * len(sources))})"
        params.extend(sources)
    if path_prefix:
        clause += f" AND {column}path LIKE ? ESCAPE '\\'"
        params.append(f"{_escape_like(path_prefix)}%")
    return clause, params


@dataclass
class _StagedDocument:
    document: Document
    chunks: list[Chunk]
    vectors: Optional[np.ndarray]
    model: str


@dataclass
class CommitStats:
    """What a committed transaction changed."""

    generation: str
    documents: int = 0
    chunks_written: int = 0
    chunks_deleted: int = 0
    vectors_deleted: int = 0
    paths_deleted: list[str] = field(default_factory=list)


class IndexTransaction:
    """Staged index mutations applied all at once.

    Upserts and deletes accumulate across documents and are written by
    ``commit()`` inside a single SQLite transaction: new rows first, then
    old-generation rows for the same documents, then their vectors. If
    anything fails nothing is applied.
    """

    def __init__(self, store: "IndexStore", generation: str):
        self.store = store
        self.generation = generation
        self._documents: list[_StagedDocument] = []
        self._deleted_paths: list[str] = []
        self._session_files: list[tuple[SessionRecord, str]] = []
        self._deleted_sessions: list[str] = []
        self._session_states: list[SessionRecord] = []
        self._meta: dict[str, Any] = {}
        self.committed = False

    def __len__(self) -> int:
        return (
            len(self._documents)
            + len(self._deleted_paths)
            + len(self._session_files)
            + len(self._deleted_sessions)
            + len(self._session_states)
            + len(self._meta)
        )

    def upsert_document(
        self,
        document: Document,
        chunks: list[Chunk],
        vectors: Optional[np.ndarray] = None,
        model: str = "",
    ) -> list[Chunk]:
        """Stage a document's chunks under this transaction's generation.

        Returns the chunks with their generation and ids assigned.
        """
        if vectors is not None and len(vectors) != len(chunks):
            raise ValueError(f"{document.path}: {len(chunks)} chunks but {len(vectors)} vectors")
        tagged = [
            replace(c, source=document.source, generation=self.generation, id=chunk_id(self.generation))
            for c in chunks
        ]
        self._documents.append(_StagedDocument(document, tagged, vectors, model))
        return tagged

    def delete_path(self, path: str) -> None:
        """Stage removal of every chunk and the file row for a path."""
        self._deleted_paths.append(path)

    def upsert_session(self, record: SessionRecord, content: str) -> None:
        self._session_files.append((record, content))

    def delete_session(self, session_key: str, path: str = "") -> None:
        """Stage removal of a session's transcript row, state and chunks."""
        self._deleted_sessions.append(session_key)
        if path:
            self._deleted_paths.append(path)

    def save_session_state(self, record: SessionRecord) -> None:
        self._session_states.append(record)

    def set_meta(self, key: str, value: Any) -> None:
        self._meta[key] = value

    def commit(self) -> CommitStats:
        """Apply every staged operation or none of them.

        Raises:
            IndexCommitError: If the transaction failed and was rolled back.
        """
        if self.committed:
            raise IndexCommitError("transaction already committed")
        stats = CommitStats(generation=self.generation)
        tenant = self.store.tenant.params()
        fts = self.store.fts_available
        now = int(time.time() * 1000)
        try:
            with self.store.connection() as conn:
                # 1. new generation rows
                for staged in self._documents:
                    self._write_document(conn, staged, tenant, fts, now)
                    stats.documents += 1
                    stats.chunks_written += len(staged.chunks)

                # 2. old generation rows for the same documents
                stale_ids: list[str] = []
                for staged in self._documents:
                    rows = conn.execute(
                        """SELECT id FROM chunks
                           WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND path = ? AND generation != ?""",
                        (*tenant, staged.document.path, self.generation),
                    ).fetchall()
                    stale_ids.extend(row["id"] for row in rows)

                for path in self._deleted_paths:
                    rows = conn.execute(
                        """SELECT id FROM chunks
                           WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND path = ?""",
                        (*tenant, path),
                    ).fetchall()
                    stale_ids.extend(row["id"] for row in rows)
                    conn.execute(
                        "DELETE FROM files WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND path = ?",
                        (*tenant, path),
                    )
                    stats.paths_deleted.append(path)

                stats.chunks_deleted = self._delete_chunks(conn, stale_ids, fts)

                # 3. vectors of the removed chunks
                stats.vectors_deleted = self._delete_vectors(conn, stale_ids)

                self._write_sessions(conn, tenant)
                for key, value in self._meta.items():
                    conn.execute(
                        """INSERT INTO meta (bridge_id, login_id, agent_id, key, value) VALUES (?, ?, ?, ?, ?)
                           ON CONFLICT (bridge_id, login_id, agent_id, key) DO UPDATE SET value=excluded.value""",
                        (*tenant, key, json.dumps(value, sort_keys=True)),
                    )
        except sqlite3.Error as e:
            raise IndexCommitError(f"index commit failed for generation {self.generation}: {e}") from e
        self.committed = True
        logger.debug(
            f"Committed generation {self.generation}: {stats.documents} documents, "
            f"+{stats.chunks_written}/-{stats.chunks_deleted} chunks"
        )
        return stats

    def _write_document(self, conn: sqlite3.Connection, staged: _StagedDocument, tenant, fts: bool, now: int):
        doc = staged.document
        for i, chunk in enumerate(staged.chunks):
            conn.execute(
                """INSERT INTO chunks
                   (id, bridge_id, login_id, agent_id, path, source, start_line, end_line,
                    hash, model, text, generation, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    chunk.id,
                    *tenant,
                    doc.path,
                    doc.source,
                    chunk.start_line,
                    chunk.end_line,
                    chunk.hash,
                    staged.model,
                    chunk.text,
                    self.generation,
                    now,
                ),
            )
            if fts:
                conn.execute(
                    """INSERT INTO chunks_fts
                       (text, id, path, source, model, start_line, end_line, bridge_id, login_id, agent_id)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        chunk.text,
                        chunk.id,
                        doc.path,
                        doc.source,
                        staged.model,
                        chunk.start_line,
                        chunk.end_line,
                        *tenant,
                    ),
                )
            if staged.vectors is not None:
                vector = np.asarray(staged.vectors[i], dtype=np.float32)
                conn.execute(
                    """INSERT INTO chunk_vectors (chunk_id, bridge_id, login_id, agent_id, dims, embedding)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (chunk.id, *tenant, int(vector.shape[0]), vector.tobytes()),
                )
        conn.execute(
            """INSERT INTO files (bridge_id, login_id, agent_id, path, source, hash, size_bytes, updated_at, generation)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (bridge_id, login_id, agent_id, path)
               DO UPDATE SET source=excluded.source, hash=excluded.hash, size_bytes=excluded.size_bytes,
                   updated_at=excluded.updated_at, generation=excluded.generation""",
            (
                *tenant,
                doc.path,
                doc.source,
                doc.hash,
                len(doc.content.encode("utf-8")),
                doc.updated_at or now,
                self.generation,
            ),
        )

    @staticmethod
    def _delete_chunks(conn: sqlite3.Connection, ids: list[str], fts: bool) -> int:
        deleted = 0
        for start in range(0, len(ids), 500):
            batch = ids[start:start + 500]
            placeholders = ",".join("?" * len(batch))
            deleted += conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", batch).rowcount
            if fts:
                conn.execute(f"DELETE FROM chunks_fts WHERE id IN ({placeholders})", batch)
        return deleted

    @staticmethod
    def _delete_vectors(conn: sqlite3.Connection, ids: list[str]) -> int:
        deleted = 0
        for start in range(0, len(ids), 500):
            batch = ids[start:start + 500]
            placeholders = ",".join("?" * len(batch))
            deleted += conn.execute(f"DELETE FROM chunk_vectors WHERE chunk_id IN ({placeholders})", batch).rowcount
        return deleted

    def _write_sessions(self, conn: sqlite3.Connection, tenant) -> None:
        for record, content in self._session_files:
            conn.execute(
                """INSERT INTO session_files
                   (bridge_id, login_id, agent_id, session_key, path, content, hash, size_bytes, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (bridge_id, login_id, agent_id, session_key)
                   DO UPDATE SET path=excluded.path, content=excluded.content, hash=excluded.hash,
                       size_bytes=excluded.size_bytes, updated_at=excluded.updated_at""",
                (
                    *tenant,
                    record.session_key,
                    record.path,
                    content,
                    record.hash,
                    len(content.encode("utf-8")),
                    record.updated_at,
                ),
            )
        for record in self._session_states:
            conn.execute(
                """INSERT INTO session_state
                   (bridge_id, login_id, agent_id, session_key, last_rowid, pending_bytes, pending_messages)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (bridge_id, login_id, agent_id, session_key)
                   DO UPDATE SET last_rowid=excluded.last_rowid, pending_bytes=excluded.pending_bytes,
                       pending_messages=excluded.pending_messages""",
                (*tenant, record.session_key, record.last_rowid, record.pending_bytes, record.pending_messages),
            )
        for session_key in self._deleted_sessions:
            for table in ("session_files", "session_state"):
                conn.execute(
                    f"DELETE FROM {table} WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND session_key = ?",
                    (*tenant, session_key),
                )


class IndexStore(SQLiteStore):
    """Read side of the index plus the factory for write transactions."""

    def __init__(self, path: Path | str, tenant: Tenant):
        super().__init__(path)
        self.tenant = tenant
        self.fts_available = False
        self.fts_error: Optional[str] = None

    def initialize(self) -> None:
        """Create the relational schema, then try to build the FTS5 table."""
        super().initialize()
        try:
            with self.connection() as conn:
                conn.executescript(FTS_SCHEMA)
            self.fts_available = True
            self.fts_error = None
        except sqlite3.OperationalError as e:
            self.fts_available = False
            self.fts_error = str(e)
            logger.warning(f"Full-text index unavailable, lexical search disabled: {e}")

    def transaction(self, generation: Optional[str] = None) -> IndexTransaction:
        return IndexTransaction(self, generation or new_generation())

    # Metadata

    def get_meta(self, key: str) -> Any:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT value FROM meta WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND key = ?",
                (*self.tenant.params(), key),
            ).fetchone()
            return json.loads(row["value"]) if row else None

    # Files and sessions

    def indexed_files(self, source: Optional[str] = None) -> dict[str, dict]:
        """Map of indexed path to its row (hash, source, generation, updated_at)."""
        query = """SELECT path, source, hash, generation, updated_at FROM files
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ?"""
        params: list = list(self.tenant.params())
        if source:
            query += " AND source = ?"
            params.append(source)
        with self.connection() as conn:
            return {row["path"]: dict(row) for row in conn.execute(query, params)}

    def session_records(self) -> dict[str, SessionRecord]:
        """Indexed sessions joined with their delta counters."""
        records: dict[str, SessionRecord] = {}
        with self.connection() as conn:
            for row in conn.execute(
                """SELECT session_key, last_rowid, pending_bytes, pending_messages FROM session_state
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ?""",
                self.tenant.params(),
            ):
                records[row["session_key"]] = SessionRecord(
                    session_key=row["session_key"],
                    path="",
                    last_rowid=row["last_rowid"],
                    pending_bytes=row["pending_bytes"],
                    pending_messages=row["pending_messages"],
                )
            for row in conn.execute(
                """SELECT session_key, path, hash, updated_at FROM session_files
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ?""",
                self.tenant.params(),
            ):
                record = records.setdefault(row["session_key"], SessionRecord(row["session_key"], row["path"]))
                record.path = row["path"]
                record.hash = row["hash"]
                record.updated_at = row["updated_at"]
        return records

    def read_session_file(self, path: str) -> Optional[str]:
        with self.connection() as conn:
            row = conn.execute(
                """SELECT content FROM session_files
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND path = ?""",
                (*self.tenant.params(), path),
            ).fetchone()
            return row["content"] if row else None

    # Counts

    def counts_by_source(self) -> dict[str, tuple[int, int]]:
        """Per-source (files, chunks)."""
        counts: dict[str, list[int]] = {}
        with self.connection() as conn:
            for row in conn.execute(
                """SELECT source, COUNT(*) AS n FROM files
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? GROUP BY source""",
                self.tenant.params(),
            ):
                counts.setdefault(row["source"], [0, 0])[0] = row["n"]
            for row in conn.execute(
                """SELECT source, COUNT(*) AS n FROM chunks
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? GROUP BY source""",
                self.tenant.params(),
            ):
                counts.setdefault(row["source"], [0, 0])[1] = row["n"]
        return {source: (files, chunks) for source, (files, chunks) in counts.items()}

    def chunk_count(self, path: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM chunks WHERE bridge_id = ? AND login_id = ? AND agent_id = ?"
        params: list = list(self.tenant.params())
        if path is not None:
            query += " AND path = ?"
            params.append(path)
        with self.connection() as conn:
            return int(conn.execute(query, params).fetchone()[0])

    # Lexical search

    def search_keyword(
        self,
        fts_query: str,
        limit: int,
        sources: tuple[str, ...] = (),
        path_prefix: str = "",
    ) -> list[tuple[HybridKeywordResult, float]]:
        """Run an FTS5 MATCH query.

        Returns candidates paired with their raw bm25() value (more
        negative is better), best first. ``text_score`` is left at 0 for
        the caller to fill in.
        """
        if not self.fts_available:
            return []
        clause, params = source_filter("", sources, path_prefix)
        with self.connection() as conn:
            cursor = conn.execute(
                f"""SELECT id, path, source, start_line, end_line, text, bm25(chunks_fts) AS bm25_rank
                    FROM chunks_fts
                    WHERE chunks_fts MATCH ? AND bridge_id = ? AND login_id = ? AND agent_id = ?{clause}
                    ORDER BY bm25_rank ASC LIMIT ?""",
                (fts_query, *self.tenant.params(), *params, limit),
            )
            return [
                (
                    HybridKeywordResult(
                        id=row["id"],
                        path=row["path"],
                        start_line=int(row["start_line"]),
                        end_line=int(row["end_line"]),
                        source=row["source"],
                        snippet=row["text"],
                        text_score=0.0,
                    ),
                    float(row["bm25_rank"]),
                )
                for row in cursor
            ]

    def scan_keyword(
        self,
        tokens: list[str],
        limit: int,
        sources: tuple[str, ...] = (),
        path_prefix: str = "",
    ) -> list[HybridKeywordResult]:
        """Lexical fallback for builds without FTS5.

        Chunks containing any token are fetched (newest first, up to
        ``limit * 10`` clamped to 200..1000) and ranked in-process by the
        fraction of tokens they contain.
        """
        tokens = list(dict.fromkeys(t.lower() for t in tokens if t))
        if not tokens or limit <= 0:
            return []
        scan_limit = min(SCAN_MAX_ROWS, max(SCAN_MIN_ROWS, limit * 10))
        clause, params = source_filter("", sources, path_prefix)
        likes = " OR ".join("LOWER(text) LIKE ? ESCAPE '\\'" for _ in tokens)
        params.extend(f"%{_escape_like(t)}%" for t in tokens)
        with self.connection() as conn:
            rows = conn.execute(
                f"""SELECT id, path, source, start_line, end_line, text FROM chunks
                    WHERE bridge_id = ? AND login_id = ? AND agent_id = ?{clause} AND ({likes})
                    ORDER BY updated_at DESC LIMIT ?""",
                (*self.tenant.params(), *params, scan_limit),
            ).fetchall()

        scored = []
        for row in rows:
            lower = row["text"].lower()
            hits = sum(1 for t in tokens if t in lower)
            if not hits:
                continue
            scored.append(
                HybridKeywordResult(
                    id=row["id"],
                    path=row["path"],
                    start_line=int(row["start_line"]),
                    end_line=int(row["end_line"]),
                    source=row["source"],
                    snippet=row["text"],
                    text_score=hits / len(tokens),
                )
            )
        scored.sort(key=lambda r: r.text_score, reverse=True)
        return scored[:limit]

    # Listing

    def recent_files(
        self,
        limit: int,
        sources: tuple[str, ...] = (),
        path_prefix: str = "",
    ) -> list[SearchResult]:
        """Indexed files, most recently updated first, each with its first chunk."""
        if limit <= 0:
            return []
        clause, params = source_filter("f.", sources, path_prefix)
        with self.connection() as conn:
            rows = conn.execute(
                f"""SELECT f.path, f.source, c.start_line, c.end_line, c.text
                    FROM files f
                    LEFT JOIN chunks c ON c.id = (
                        SELECT id FROM chunks
                        WHERE bridge_id = f.bridge_id AND login_id = f.login_id
                            AND agent_id = f.agent_id AND path = f.path
                        ORDER BY start_line ASC LIMIT 1
                    )
                    WHERE f.bridge_id = ? AND f.login_id = ? AND f.agent_id = ?{clause}
                    ORDER BY f.updated_at DESC, f.path ASC LIMIT ?""",
                (*self.tenant.params(), *params, min(limit, SCAN_MIN_ROWS)),
            ).fetchall()
        return [
            SearchResult(
                path=row["path"],
                start_line=int(row["start_line"] or 1),
                end_line=int(row["end_line"] or 1),
                score=1.0,
                snippet=row["text"] or "",
                source=row["source"],
            )
            for row in rows
        ]


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
