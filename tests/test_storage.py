"""Tests for the content store, embedding cache and index transactions."""

import dataclasses

import numpy as np
import pytest

from mempack.errors import IndexCommitError, PathError
from mempack.models import Chunk, Document, SessionRecord, Tenant, hash_text
from mempack.storage import ContentStore, EmbeddingCache, IndexStore, VectorIndex, new_generation
from mempack.storage.content import DEFAULT_MEMORY_TEMPLATE


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "memory.db"


@pytest.fixture
def index(db_path, tenant):
    store = IndexStore(db_path, tenant)
    store.initialize()
    return store


def make_chunks(path: str, texts: list[str]) -> list[Chunk]:
    return [
        Chunk(text=t, file_path=path, chunk_index=i, start_line=i + 1, end_line=i + 1, hash=hash_text(t))
        for i, t in enumerate(texts)
    ]


# ---------------------------------------------------------------------------
# Content store
# ---------------------------------------------------------------------------


class TestContentStore:
    def test_write_and_read(self, content, tenant):
        stored = content.write(tenant, "/memory/people.md", "Alice likes tea", updated_at=42)
        assert stored.path == "memory/people.md"
        assert stored.hash == hash_text("Alice likes tea")
        assert stored.size_bytes == len("Alice likes tea")

        read = content.read(tenant, "memory/people.md")
        assert read == stored

    def test_overwrite(self, content, tenant):
        content.write(tenant, "memory/a.md", "one", updated_at=1)
        content.write(tenant, "memory/a.md", "two", updated_at=2)
        read = content.read(tenant, "memory/a.md")
        assert read.content == "two"
        assert read.updated_at == 2
        assert len(content.list_files(tenant)) == 1

    def test_read_missing(self, content, tenant):
        assert content.read(tenant, "memory/nothing.md") is None

    def test_rejects_escaping_path(self, content, tenant):
        with pytest.raises(PathError):
            content.write(tenant, "../outside.md", "x")

    def test_tenants_are_isolated(self, content, tenant):
        other = Tenant("other-bridge", "other-login")
        content.write(tenant, "memory/a.md", "mine")
        assert content.read(other, "memory/a.md") is None
        assert content.list_files(other) == []

    def test_list_prefix_and_since(self, content, tenant):
        content.write(tenant, "memory/a.md", "a", updated_at=10)
        content.write(tenant, "memory/b.md", "b", updated_at=20)
        content.write(tenant, "memory_x.md", "x", updated_at=30)
        content.write(tenant, "other/c.md", "c", updated_at=30)

        assert [f.path for f in content.list_files(tenant, "memory")] == ["memory/a.md", "memory/b.md"]
        assert [f.path for f in content.list_files(tenant, "memory/", since=15)] == ["memory/b.md"]
        assert len(content.list_files(tenant)) == 4

    def test_delete(self, content, tenant):
        content.write(tenant, "memory/a.md", "a")
        assert content.delete(tenant, "memory/a.md") is True
        assert content.delete(tenant, "memory/a.md") is False

    def test_default_memory_file(self, content, tenant):
        assert content.ensure_default_memory_file(tenant) is True
        assert content.read(tenant, "MEMORY.md").content == DEFAULT_MEMORY_TEMPLATE
        content.write(tenant, "MEMORY.md", "custom")
        assert content.ensure_default_memory_file(tenant) is False
        assert content.read(tenant, "MEMORY.md").content == "custom"

    def test_session_messages(self, content, tenant):
        first = content.append_message(tenant, "room", "user", "hello", timestamp=1000)
        second = content.append_message(tenant, "room", "assistant", "hi there", timestamp=2000)
        content.append_message(tenant, "other", "user", "elsewhere")

        assert second > first
        assert content.list_sessions(tenant) == ["other", "room"]
        messages = content.read_messages(tenant, "room")
        assert [(m.role, m.body, m.created_at) for m in messages] == [
            ("user", "hello", 1000),
            ("assistant", "hi there", 2000),
        ]
        assert [m.rowid for m in content.read_messages(tenant, "room", after_rowid=first)] == [second]

        assert content.delete_session(tenant, "room") == 2
        assert content.list_sessions(tenant) == ["other"]

    def test_list_annotations_resolve_to_builtin(self):
        assert not hasattr(ContentStore, "list")
        assert ContentStore.list_sessions.__annotations__["return"] == list[str]
        assert ContentStore.list_files.__annotations__["return"].__origin__ is list


# ---------------------------------------------------------------------------
# Embedding cache
# ---------------------------------------------------------------------------


class TestEmbeddingCache:
    def make_cache(self, db_path, **kwargs):
        cache = EmbeddingCache(db_path, **kwargs)
        cache.initialize()
        return cache

    def test_round_trip_is_float32(self, db_path):
        cache = self.make_cache(db_path)
        vector = np.array([0.1, 0.2, 0.3], dtype=np.float32)
        cache.put("h1", "sig", vector)
        hit = cache.get("h1", "sig")
        assert hit.dtype == np.float32
        assert hit.tobytes() == vector.tobytes()

    def test_signature_scopes_entries(self, db_path):
        cache = self.make_cache(db_path)
        cache.put("h1", "sig-a", np.ones(3, dtype=np.float32))
        assert cache.get("h1", "sig-b") is None

    def test_get_many(self, db_path):
        cache = self.make_cache(db_path)
        cache.put_many({"h1": np.ones(2), "h2": np.zeros(2)}, "sig")
        found = cache.get_many(["h1", "h2", "h3", "h1"], "sig")
        assert set(found) == {"h1", "h2"}

    def test_bounded(self, db_path):
        cache = self.make_cache(db_path, max_entries=2)
        for i in range(5):
            cache.put(f"h{i}", "sig", np.full(2, i, dtype=np.float32))
        assert cache.count() == 2
        assert cache.get("h4", "sig") is not None
        assert cache.get("h0", "sig") is None

    def test_eviction_spares_recent_hits(self, db_path):
        cache = self.make_cache(db_path, max_entries=2)
        cache.put("a", "sig", np.ones(2))
        cache.put("b", "sig", np.ones(2))
        assert cache.get("a", "sig") is not None
        cache.put("c", "sig", np.ones(2))
        assert cache.get("b", "sig") is None
        assert set(cache.get_many(["a", "c"], "sig")) == {"a", "c"}

    def test_disabled(self, db_path):
        cache = self.make_cache(db_path, enabled=False)
        cache.put("h1", "sig", np.ones(2))
        assert cache.count() == 0
        assert cache.get("h1", "sig") is None


# ---------------------------------------------------------------------------
# Index transactions
# ---------------------------------------------------------------------------


class TestIndexTransaction:
    def test_generations_sort(self):
        first = new_generation()
        second = new_generation()
        assert second > first

    def test_chunks_travel_with_the_transaction_not_the_document(self):
        assert "chunks" not in {f.name for f in dataclasses.fields(Document)}
        with pytest.raises(TypeError):
            Document(path="a.md", content="x", chunks=[])

    def test_commit_writes_chunks_and_files(self, index):
        doc = Document(path="memory/a.md", content="alpha\nbeta", updated_at=5)
        txn = index.transaction()
        tagged = txn.upsert_document(doc, make_chunks(doc.path, ["alpha", "beta"]), np.eye(2), model="m")
        assert all(c.id.startswith(txn.generation + ":") for c in tagged)
        stats = txn.commit()

        assert stats.documents == 1
        assert stats.chunks_written == 2
        assert index.chunk_count("memory/a.md") == 2
        files = index.indexed_files()
        assert files["memory/a.md"]["hash"] == doc.hash
        assert files["memory/a.md"]["generation"] == txn.generation
        assert index.counts_by_source() == {"notes": (1, 2)}

    def test_new_generation_replaces_old(self, index):
        doc = Document(path="memory/a.md", content="v1")
        first = index.transaction()
        first.upsert_document(doc, make_chunks(doc.path, ["one", "two", "three"]), np.eye(3), model="m")
        first.commit()

        second = index.transaction()
        second.upsert_document(doc, make_chunks(doc.path, ["uno"]), np.ones((1, 3)), model="m")
        stats = second.commit()

        assert stats.chunks_deleted == 3
        assert stats.vectors_deleted == 3
        assert index.chunk_count() == 1
        assert VectorIndex(index).dimensions() == 3

    def test_delete_path(self, index):
        doc = Document(path="memory/a.md", content="alpha")
        txn = index.transaction()
        txn.upsert_document(doc, make_chunks(doc.path, ["alpha"]))
        txn.commit()

        txn = index.transaction()
        txn.delete_path("memory/a.md")
        stats = txn.commit()
        assert stats.paths_deleted == ["memory/a.md"]
        assert index.chunk_count() == 0
        assert index.indexed_files() == {}

    def test_vector_count_must_match(self, index):
        doc = Document(path="memory/a.md", content="alpha")
        with pytest.raises(ValueError):
            index.transaction().upsert_document(doc, make_chunks(doc.path, ["a", "b"]), np.eye(3))

    def test_failed_commit_applies_nothing(self, index):
        doc = Document(path="memory/a.md", content="alpha")
        txn = index.transaction()
        tagged = txn.upsert_document(doc, make_chunks(doc.path, ["alpha"]))
        txn.commit()

        # Reusing a chunk id violates the primary key halfway through
        bad = index.transaction()
        bad.upsert_document(Document(path="memory/b.md", content="beta"), make_chunks("memory/b.md", ["beta"]))
        bad._documents.append(
            type(bad._documents[0])(Document(path="memory/c.md", content="c"), tagged, None, "")
        )
        with pytest.raises(IndexCommitError):
            bad.commit()
        assert set(index.indexed_files()) == {"memory/a.md"}
        assert index.chunk_count() == 1

    def test_commit_twice_raises(self, index):
        txn = index.transaction()
        txn.commit()
        with pytest.raises(IndexCommitError):
            txn.commit()

    def test_meta(self, index):
        txn = index.transaction()
        txn.set_meta("index", {"model": "m", "chunk_tokens": 400})
        txn.commit()
        assert index.get_meta("index") == {"model": "m", "chunk_tokens": 400}
        assert index.get_meta("missing") is None

    def test_session_records(self, index):
        record = SessionRecord("room", "sessions/room.jsonl", last_rowid=7, hash="h", updated_at=9)
        txn = index.transaction()
        txn.upsert_session(record, "User: hi")
        txn.save_session_state(record)
        txn.commit()

        records = index.session_records()
        assert records["room"].last_rowid == 7
        assert records["room"].path == "sessions/room.jsonl"
        assert records["room"].hash == "h"
        assert index.read_session_file("sessions/room.jsonl") == "User: hi"

        txn = index.transaction()
        txn.delete_session("room", "sessions/room.jsonl")
        txn.commit()
        assert index.session_records() == {}


class TestKeywordSearch:
    def test_fts_match(self, index):
        if not index.fts_available:
            pytest.skip("SQLite built without FTS5")
        doc = Document(path="memory/a.md", content="x")
        txn = index.transaction()
        txn.upsert_document(doc, make_chunks(doc.path, ["the quick fox", "a lazy dog"]))
        txn.commit()

        hits = index.search_keyword('"fox"', limit=10)
        assert [h.snippet for h, _ in hits] == ["the quick fox"]
        assert hits[0][1] <= 0

        assert index.search_keyword('"fox"', limit=10, sources=("sessions",)) == []
        assert index.search_keyword('"fox"', limit=10, path_prefix="other/") == []

    def test_scan_ranks_by_token_coverage(self, index):
        doc = Document(path="memory/a.md", content="x")
        txn = index.transaction()
        txn.upsert_document(doc, make_chunks(doc.path, ["The quick Fox", "a lazy dog", "quick dog_house"]))
        txn.commit()

        hits = index.scan_keyword(["quick", "fox"], limit=10)
        assert [(h.snippet, h.text_score) for h in hits] == [("The quick Fox", 1.0), ("quick dog_house", 0.5)]
        assert index.scan_keyword(["quick", "fox"], limit=1)[0].snippet == "The quick Fox"

        # Underscore is literal, not a LIKE wildcard
        assert [h.snippet for h in index.scan_keyword(["dog_house"], limit=10)] == ["quick dog_house"]
        assert index.scan_keyword(["lazy_dog"], limit=10) == []
        assert index.scan_keyword(["fox"], limit=10, sources=("sessions",)) == []
        assert index.scan_keyword([], limit=10) == []

    def test_recent_files(self, index):
        txn = index.transaction()
        old = Document(path="memory/old.md", content="old", updated_at=1_000)
        new = Document(path="memory/new.md", content="new", updated_at=2_000)
        txn.upsert_document(old, make_chunks(old.path, ["old first", "old second"]))
        txn.upsert_document(new, make_chunks(new.path, ["new first"]))
        txn.commit()

        recent = index.recent_files(limit=10)
        assert [(r.path, r.snippet, r.score) for r in recent] == [
            ("memory/new.md", "new first", 1.0),
            ("memory/old.md", "old first", 1.0),
        ]
        assert [r.path for r in index.recent_files(limit=1)] == ["memory/new.md"]
        assert index.recent_files(limit=10, sources=("sessions",)) == []
        assert index.recent_files(limit=0) == []


class TestVectorIndex:
    def test_cosine_ranking(self, index):
        doc = Document(path="memory/a.md", content="x")
        vectors = np.array([[1, 0], [0, 1], [1, 1]], dtype=np.float32)
        txn = index.transaction()
        txn.upsert_document(doc, make_chunks(doc.path, ["east", "north", "northeast"]), vectors, model="m")
        txn.commit()

        vector = VectorIndex(index)
        results = vector.search(np.array([1, 0]), limit=2, model="m")
        assert [r.snippet for r in results] == ["east", "northeast"]
        assert results[0].vector_score == pytest.approx(1.0)
        assert results[1].vector_score == pytest.approx(2 ** -0.5)

        assert vector.search(np.array([1, 0]), limit=2, model="other") == []
        assert vector.search(np.array([1, 0, 0]), limit=2, model="m") == []

    def test_disabled(self, index):
        vector = VectorIndex(index, enabled=False)
        assert vector.is_available() is False
        assert vector.error == "vector search disabled"
        assert vector.search(np.ones(2), limit=5, model="m") == []

    def test_bad_extension_is_unavailable(self, index, tmp_path):
        vector = VectorIndex(index, extension_path=str(tmp_path / "missing-ext.so"))
        assert vector.is_available() is False
        assert "vector extension failed to load" in vector.error
