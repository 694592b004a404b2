"""Database schema for the memory store."""

SCHEMA = """
-- Content store: tenant-scoped virtual files (notes)
CREATE TABLE IF NOT EXISTS content_files (
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    path TEXT NOT NULL,
    content TEXT NOT NULL,
    hash TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (bridge_id, login_id, agent_id, path)
);

-- Content store: session transcripts, one row per message
CREATE TABLE IF NOT EXISTS session_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    session_key TEXT NOT NULL,
    role TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

-- Index: one row per indexed document
CREATE TABLE IF NOT EXISTS files (
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    path TEXT NOT NULL,
    source TEXT NOT NULL,
    hash TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    generation TEXT NOT NULL,
    PRIMARY KEY (bridge_id, login_id, agent_id, path)
);

-- Index: chunks, ids are "<generation>:<uuid>"
CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    path TEXT NOT NULL,
    source TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    hash TEXT NOT NULL,
    model TEXT NOT NULL,
    text TEXT NOT NULL,
    generation TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

-- Vectors table: float32 embeddings keyed by chunk id
CREATE TABLE IF NOT EXISTS chunk_vectors (
    chunk_id TEXT PRIMARY KEY,
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    dims INTEGER NOT NULL,
    embedding BLOB NOT NULL
);

-- Session transcripts as indexed
CREATE TABLE IF NOT EXISTS session_files (
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    session_key TEXT NOT NULL,
    path TEXT NOT NULL,
    content TEXT NOT NULL,
    hash TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (bridge_id, login_id, agent_id, session_key)
);

-- Per-session delta counters since the last index
CREATE TABLE IF NOT EXISTS session_state (
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    session_key TEXT NOT NULL,
    last_rowid INTEGER NOT NULL DEFAULT 0,
    pending_bytes INTEGER NOT NULL DEFAULT 0,
    pending_messages INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (bridge_id, login_id, agent_id, session_key)
);

-- Index metadata (provider, model, chunking) as JSON
CREATE TABLE IF NOT EXISTS meta (
    bridge_id TEXT NOT NULL,
    login_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (bridge_id, login_id, agent_id, key)
);

-- Embedding cache shared by all tenants
CREATE TABLE IF NOT EXISTS embedding_cache (
    provider_signature TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    dims INTEGER NOT NULL,
    embedding BLOB NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (provider_signature, content_hash)
);

-- Indexes for efficient queries
CREATE INDEX IF NOT EXISTS idx_session_messages_key
    ON session_messages(bridge_id, login_id, agent_id, session_key, id);
CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(bridge_id, login_id, agent_id, path);
CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(bridge_id, login_id, agent_id, source);
CREATE INDEX IF NOT EXISTS idx_cache_updated ON embedding_cache(updated_at);
"""

# Created separately: builds of SQLite without FTS5 still get a working store.
FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
    text,
    id UNINDEXED,
    path UNINDEXED,
    source UNINDEXED,
    model UNINDEXED,
    start_line UNINDEXED,
    end_line UNINDEXED,
    bridge_id UNINDEXED,
    login_id UNINDEXED,
    agent_id UNINDEXED
);
"""
