"""Core data models for documents, chunks and sessions."""

import hashlib
from dataclasses import dataclass

SOURCE_NOTES = "notes"
SOURCE_SESSIONS = "sessions"
ALL_SOURCES = (SOURCE_NOTES, SOURCE_SESSIONS)


def hash_text(text: str) -> str:
    """Return the hex sha256 digest of a string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Tenant:
    """Namespace owning a set of documents: bridge x login x agent."""

    bridge_id: str
    login_id: str
    agent_id: str = "main"

    @property
    def key(self) -> str:
        return f"{self.bridge_id}/{self.login_id}/{self.agent_id}"

    def params(self) -> tuple[str, str, str]:
        """Positional SQL parameters for the tenant columns."""
        return (self.bridge_id, self.login_id, self.agent_id)


@dataclass(frozen=True)
class StoredFile:
    """A file as held by the content store."""

    path: str
    content: str
    hash: str
    size_bytes: int
    updated_at: int


@dataclass
class Chunk:
    """A line-addressable span of a document."""

    text: str
    file_path: str
    chunk_index: int
    start_line: int
    end_line: int
    hash: str
    source: str = SOURCE_NOTES
    generation: str = ""
    id: str = ""


@dataclass
class Document:
    """A markdown resource or session transcript to be indexed."""

    path: str
    content: str
    source: str = SOURCE_NOTES
    updated_at: int = 0
    hash: str = ""

    def __post_init__(self) -> None:
        if not self.hash:
            self.hash = hash_text(self.content)


@dataclass(frozen=True)
class SessionMessage:
    """One row of a session transcript."""

    rowid: int
    session_key: str
    role: str
    body: str
    created_at: int


@dataclass
class SessionRecord:
    """Index-side bookkeeping for a session transcript."""

    session_key: str
    path: str
    last_rowid: int = 0
    pending_bytes: int = 0
    pending_messages: int = 0
    hash: str = ""
    updated_at: int = 0
