"""Tenant-scoped virtual file store for notes and session transcripts."""

import time
from typing import Optional

from mempack.models import SessionMessage, StoredFile, Tenant, hash_text
from mempack.paths import MEMORY_FILE, normalize_dir, normalize_path
from mempack.storage.store import SQLiteStore

DEFAULT_MEMORY_TEMPLATE = """# Memory

Long-lived notes worth remembering across conversations.
"""


def now_ms() -> int:
    return int(time.time() * 1000)


class ContentStore(SQLiteStore):
    """Append/overwrite store owning document bytes.

    The index never writes here; it only reads files and messages and
    compares hashes and timestamps.
    """

    def write(self, tenant: Tenant, path: str, content: str, updated_at: Optional[int] = None) -> StoredFile:
        """Create or overwrite a file."""
        path = normalize_path(path)
        stored = StoredFile(
            path=path,
            content=content,
            hash=hash_text(content),
            size_bytes=len(content.encode("utf-8")),
            updated_at=updated_at if updated_at is not None else now_ms(),
        )
        with self.connection() as conn:
            conn.execute(
                """INSERT INTO content_files
                   (bridge_id, login_id, agent_id, path, content, hash, size_bytes, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (bridge_id, login_id, agent_id, path)
                   DO UPDATE SET content=excluded.content, hash=excluded.hash,
                       size_bytes=excluded.size_bytes, updated_at=excluded.updated_at""",
                (*tenant.params(), path, stored.content, stored.hash, stored.size_bytes, stored.updated_at),
            )
        return stored

    def write_if_missing(self, tenant: Tenant, path: str, content: str) -> bool:
        """Write only when the path does not exist yet. Returns True if written."""
        path = normalize_path(path)
        with self.connection() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO content_files
                   (bridge_id, login_id, agent_id, path, content, hash, size_bytes, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    *tenant.params(),
                    path,
                    content,
                    hash_text(content),
                    len(content.encode("utf-8")),
                    now_ms(),
                ),
            )
            return cursor.rowcount > 0

    def ensure_default_memory_file(self, tenant: Tenant) -> bool:
        """Seed MEMORY.md for a tenant that has none."""
        return self.write_if_missing(tenant, MEMORY_FILE, DEFAULT_MEMORY_TEMPLATE)

    def read(self, tenant: Tenant, path: str) -> Optional[StoredFile]:
        """Read a file, or None when it does not exist."""
        path = normalize_path(path)
        with self.connection() as conn:
            row = conn.execute(
                """SELECT path, content, hash, size_bytes, updated_at FROM content_files
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND path = ?""",
                (*tenant.params(), path),
            ).fetchone()
            return StoredFile(**dict(row)) if row else None

    def delete(self, tenant: Tenant, path: str) -> bool:
        path = normalize_path(path)
        with self.connection() as conn:
            cursor = conn.execute(
                """DELETE FROM content_files
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND path = ?""",
                (*tenant.params(), path),
            )
            return cursor.rowcount > 0

    def list_files(self, tenant: Tenant, prefix: str = "", since: Optional[int] = None) -> list[StoredFile]:
        """List files under a directory prefix, optionally changed after ``since``."""
        prefix = normalize_dir(prefix)
        query = """SELECT path, content, hash, size_bytes, updated_at FROM content_files
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND path LIKE ? ESCAPE '\\'"""
        params: list = [*tenant.params(), _like_prefix(prefix)]
        if since is not None:
            query += " AND updated_at > ?"
            params.append(since)
        query += " ORDER BY path"
        with self.connection() as conn:
            return [StoredFile(**dict(row)) for row in conn.execute(query, params)]

    # Session transcripts

    def append_message(
        self,
        tenant: Tenant,
        session_key: str,
        role: str,
        body: str,
        timestamp: Optional[int] = None,
    ) -> int:
        """Append a message to a session transcript and return its rowid."""
        with self.connection() as conn:
            cursor = conn.execute(
                """INSERT INTO session_messages
                   (bridge_id, login_id, agent_id, session_key, role, body, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (*tenant.params(), session_key, role, body, timestamp if timestamp is not None else now_ms()),
            )
            return int(cursor.lastrowid)

    def list_sessions(self, tenant: Tenant) -> list[str]:
        with self.connection() as conn:
            cursor = conn.execute(
                """SELECT DISTINCT session_key FROM session_messages
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? ORDER BY session_key""",
                tenant.params(),
            )
            return [row["session_key"] for row in cursor]

    def read_messages(self, tenant: Tenant, session_key: str, after_rowid: int = 0) -> list[SessionMessage]:
        with self.connection() as conn:
            cursor = conn.execute(
                """SELECT id AS rowid, session_key, role, body, created_at FROM session_messages
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND session_key = ? AND id > ?
                   ORDER BY id ASC""",
                (*tenant.params(), session_key, after_rowid),
            )
            return [SessionMessage(**dict(row)) for row in cursor]

    def delete_session(self, tenant: Tenant, session_key: str) -> int:
        with self.connection() as conn:
            cursor = conn.execute(
                """DELETE FROM session_messages
                   WHERE bridge_id = ? AND login_id = ? AND agent_id = ? AND session_key = ?""",
                (*tenant.params(), session_key),
            )
            return cursor.rowcount


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"
