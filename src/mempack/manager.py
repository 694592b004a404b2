"""Per-tenant memory search: sync engine, hybrid search and file access.

A ``MemorySearchManager`` owns everything for one tenant and one resolved
config: the stores, the embedding providers and the scheduler thread that
runs sync passes. Searches run on the caller's thread and read whatever
generation was last committed.
"""

import logging
import sqlite3
import threading
import time
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Union

import numpy as np

from mempack.chunkers import MarkdownChunker
from mempack.config import ResolvedConfig
from mempack.embedders import (
    ProviderResult,
    RetryingEmbedder,
    RetryPolicy,
    create_batch_provider,
    create_provider,
    embed_in_batches,
    provider_signature,
)
from mempack.embedders.retry import DEFAULT_POLICY, EMBED_CONCURRENCY, default_timeout
from mempack.errors import (
    BatchEmbeddingError,
    BatchPendingError,
    EmbeddingError,
    FileNotFoundInStoreError,
    MempackError,
    PathError,
)
from mempack.models import (
    MODE_HYBRID,
    MODE_KEYWORD,
    MODE_LIST,
    MODE_SEMANTIC,
    SOURCE_NOTES,
    SOURCE_SESSIONS,
    Chunk,
    Document,
    SearchOptions,
    SearchResponse,
    SessionRecord,
    Tenant,
    hash_text,
    normalize_mode,
)
from mempack.paths import is_indexable_note, is_session_path, normalize_path, session_path_for_key
from mempack.protocols import EmbeddingProvider, ProviderKind
from mempack.scheduler import SyncScheduler
from mempack.search import (
    MAX_CANDIDATES,
    apply_injection_budget,
    build_fts_query,
    filter_and_limit,
    keyword_only_results,
    keyword_scores,
    keyword_tokens,
    merge_hybrid_results,
    truncate_snippet,
    vector_only_results,
)
from mempack.sessions import compute_delta, exceeds_threshold, record_for, session_document
from mempack.status import (
    BatchStatus,
    CacheStatus,
    EngineStatus,
    FallbackStatus,
    MemorySearchStatus,
    ProviderStatus,
    SourceCounts,
    VectorStatus,
)
from mempack.storage import ContentStore, EmbeddingCache, IndexStore, IndexTransaction, VectorIndex, new_generation
from mempack.storage.content import now_ms

logger = logging.getLogger(__name__)

BATCH_FAILURE_LIMIT = 2
META_KEY = "index"
SEARCH_SYNC_TIMEOUT = 10.0
DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class SyncReport:
    """What one sync pass did."""

    generation: str
    reason: str = ""
    full_reindex: bool = False
    notes_indexed: int = 0
    notes_deleted: int = 0
    sessions_indexed: int = 0
    sessions_deleted: int = 0
    sessions_pruned: int = 0
    chunks_written: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    stale_notes: list[str] = field(default_factory=list)
    stale_sessions: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.stale_notes and not self.stale_sessions


class MemorySearchManager:
    """Memory index and search for one tenant.

    Args:
        tenant: Namespace the manager reads and indexes
        config: Resolved memory config
        content: Content store; defaults to one at ``config.store_path``
        provider: A ``ProviderResult``, a bare provider, or None to select
            one from ``config``
        batch_provider: Batch embedder; None derives one from ``config``
        retry_policy: Backoff for embedding calls
        sleep: Injectable for tests
    """

    def __init__(
        self,
        tenant: Tenant,
        config: ResolvedConfig,
        content: Optional[ContentStore] = None,
        provider: Union[ProviderResult, EmbeddingProvider, None] = None,
        batch_provider: Optional[EmbeddingProvider] = None,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tenant = tenant
        self.config = config
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._lock = threading.Lock()

        self.content = content or ContentStore(config.store_path)
        self.content.initialize()
        self.index = IndexStore(self.content.path, tenant)
        self.index.initialize()
        self.cache = EmbeddingCache(
            self.content.path, enabled=config.cache.enabled, max_entries=config.cache.max_entries
        )
        self.vector = VectorIndex(
            self.index, enabled=config.store.vector.enabled, extension_path=config.store.vector.extension_path
        )
        self.chunker = MarkdownChunker(config.chunking.tokens, config.chunking.overlap)

        if isinstance(provider, ProviderResult):
            self.provider_result = provider
        elif provider is None:
            self.provider_result = create_provider(config)
        else:
            self.provider_result = ProviderResult(provider, config.provider)
        self.provider = self.provider_result.provider
        self._query_embedder: Optional[RetryingEmbedder] = None
        self._signature = ""
        if self.provider is not None:
            self._query_embedder = RetryingEmbedder(
                self.provider, retry_policy, default_timeout(self.provider, query=True), sleep
            )
            self._signature = provider_signature(self.provider)
        self.batch_provider = batch_provider or create_batch_provider(config, self.provider)

        # Guarded by _lock
        self.dirty = True
        self.sessions_dirty = SOURCE_SESSIONS in config.sources
        self._change_epoch = 0
        self._warmed: set[str] = set()
        self.batch_enabled = self.batch_provider is not None
        self.batch_failures = 0
        self.batch_last_error: Optional[str] = None
        self.batch_last_provider: Optional[str] = None
        self.vector_error: Optional[str] = None
        self.last_sync_at: Optional[int] = None
        self.last_sync_error: Optional[str] = None

        self.scheduler = SyncScheduler(
            self._run_sync, debounce_ms=config.sync.watch_debounce_ms, name=f"mempack-sync-{tenant.key}"
        )
        if config.sync.interval_minutes > 0:
            self.scheduler.start_interval(config.sync.interval_minutes)

    @property
    def model_name(self) -> str:
        return self.provider.model_name if self.provider is not None else ""

    @property
    def is_dirty(self) -> bool:
        with self._lock:
            return self.dirty or self.sessions_dirty

    def close(self) -> None:
        self.scheduler.close()

    # Triggers

    def request_sync(
        self, reason: str = "manual", force: bool = False, session_keys: tuple[str, ...] = ()
    ) -> Future:
        return self.scheduler.request_sync(reason, force, session_keys)

    def sync(
        self,
        force: bool = False,
        reason: str = "manual",
        session_keys: tuple[str, ...] = (),
        timeout: Optional[float] = None,
    ) -> SyncReport:
        """Run a sync pass on the scheduler thread and wait for it."""
        return self.request_sync(reason, force, session_keys).result(timeout)

    def warm_session(self, session_key: str) -> Optional[Future]:
        """Index a session when it starts, once per manager and key."""
        if not self.config.sync.on_session_start or not session_key:
            return None
        with self._lock:
            if session_key in self._warmed:
                return None
            self._warmed.add(session_key)
        return self.scheduler.request_sync("session-start", session_keys=(session_key,))

    def notify_file_changed(self, path: str) -> None:
        """Mark notes dirty; with watching on, a debounced sync follows."""
        with self._lock:
            self.dirty = True
            self._change_epoch += 1
        logger.debug(f"Memory file changed: {path}")
        if self.config.sync.watch:
            self.scheduler.notify_change()

    def notify_session_appended(self, session_key: str) -> None:
        if SOURCE_SESSIONS not in self.config.sources:
            return
        with self._lock:
            self.sessions_dirty = True
            self._change_epoch += 1
        logger.debug(f"Session appended: {session_key}")
        if self.config.sync.watch:
            self.scheduler.notify_change()

    def prune_expired_sessions(self, now: Optional[int] = None) -> int:
        """Drop indexed sessions older than the retention window. Returns the count."""
        return self.scheduler.submit(lambda: self._prune_expired_sessions(now)).result()

    # Sync engine (scheduler thread only)

    def _meta_record(self) -> dict:
        return {
            "provider": self.provider.provider_id if self.provider is not None else "",
            "model": self.model_name,
            "chunk_tokens": self.config.chunking.tokens,
            "chunk_overlap": self.config.chunking.overlap,
        }

    def _run_sync(self, reason: str, force: bool, session_keys: tuple[str, ...]) -> SyncReport:
        with self._lock:
            epoch = self._change_epoch
        report = SyncReport(generation=new_generation(), reason=reason)
        meta = self._meta_record()
        stored_meta = self.index.get_meta(META_KEY)
        report.full_reindex = force or stored_meta != meta
        started = time.monotonic()
        logger.info(f"Memory sync ({reason}) for {self.tenant.key}{' [full]' if report.full_reindex else ''}")

        try:
            self._sync_notes(report)
            self._sync_sessions(report, session_keys)
            if report.clean and report.full_reindex:
                tx = self.index.transaction(report.generation)
                tx.set_meta(META_KEY, meta)
                tx.commit()
        except (MempackError, sqlite3.Error) as e:
            with self._lock:
                self.last_sync_error = str(e)
            raise

        with self._lock:
            self.last_sync_at = now_ms()
            self.last_sync_error = None
            if self._change_epoch == epoch:
                if not report.stale_notes:
                    self.dirty = False
                if not report.stale_sessions:
                    self.sessions_dirty = False

        logger.info(
            f"Memory sync done in {time.monotonic() - started:.2f}s: "
            f"{report.notes_indexed} notes, {report.sessions_indexed} sessions, "
            f"{report.chunks_written} chunks, cache {report.cache_hits} hit/{report.cache_misses} miss"
        )
        if not report.clean:
            logger.warning(
                f"{len(report.stale_notes) + len(report.stale_sessions)} documents left stale; "
                f"they will be retried on the next sync"
            )
        return report

    def _sync_notes(self, report: SyncReport) -> None:
        indexed = self.index.indexed_files(SOURCE_NOTES)
        files = []
        if SOURCE_NOTES in self.config.sources:
            files = [
                f for f in self.content.list_files(self.tenant) if is_indexable_note(f.path, self.config.extra_paths)
            ]

        tx = self.index.transaction(report.generation)
        present = set()
        for stored in files:
            present.add(stored.path)
            row = indexed.get(stored.path)
            if not report.full_reindex and row is not None and row["hash"] == stored.hash:
                continue
            document = Document(
                path=stored.path,
                content=stored.content,
                source=SOURCE_NOTES,
                updated_at=stored.updated_at,
                hash=stored.hash,
            )
            if self._stage_document(tx, document, report):
                report.notes_indexed += 1
            else:
                report.stale_notes.append(stored.path)

        for path in indexed:
            if path not in present:
                tx.delete_path(path)
                report.notes_deleted += 1

        if len(tx):
            tx.commit()

    def _sync_sessions(self, report: SyncReport, session_keys: tuple[str, ...]) -> None:
        indexed = self.index.session_records()
        tx = self.index.transaction(report.generation)

        if SOURCE_SESSIONS not in self.config.sources:
            for key, record in indexed.items():
                tx.delete_session(key, record.path or session_path_for_key(key))
                report.sessions_deleted += 1
            if len(tx):
                tx.commit()
            return

        thresholds = self.config.sync.sessions
        cutoff = self._retention_cutoff()
        index_all = report.full_reindex or not indexed
        active = self.content.list_sessions(self.tenant)

        for key in active:
            messages = self.content.read_messages(self.tenant, key)
            record = indexed.get(key)
            path = session_path_for_key(key)
            if cutoff is not None and messages and max(m.created_at for m in messages) < cutoff:
                # Outside the retention window; never index it
                if record is not None:
                    tx.delete_session(key, record.path or path)
                    report.sessions_deleted += 1
                continue

            last_rowid = record.last_rowid if record else 0
            delta = compute_delta(key, messages, last_rowid)
            carried_bytes = record.pending_bytes if record and not delta.rewound else 0
            carried_messages = record.pending_messages if record and not delta.rewound else 0
            state = SessionRecord(
                session_key=key,
                path=path,
                last_rowid=delta.max_rowid,
                pending_bytes=carried_bytes + delta.delta_bytes,
                pending_messages=carried_messages + delta.delta_messages,
            )

            should_index = index_all or delta.rewound or (key in session_keys and last_rowid == 0)
            if not should_index:
                should_index = exceeds_threshold(
                    state.pending_bytes, state.pending_messages, thresholds.delta_bytes, thresholds.delta_messages
                )

            if should_index:
                document = session_document(key, messages)
                if not document.content:
                    if record is not None and record.hash:
                        tx.delete_path(record.path or path)
                elif index_all or delta.rewound or record is None or record.hash != document.hash:
                    if not self._stage_document(tx, document, report):
                        report.stale_sessions.append(key)
                        continue
                    tx.upsert_session(record_for(document, key, delta.max_rowid), document.content)
                    report.sessions_indexed += 1
                state.pending_bytes = 0
                state.pending_messages = 0
            tx.save_session_state(state)

        active_keys = set(active)
        for key, record in indexed.items():
            if key not in active_keys:
                tx.delete_session(key, record.path or session_path_for_key(key))
                report.sessions_deleted += 1

        if len(tx):
            tx.commit()
        report.sessions_pruned = self._prune_expired_sessions()

    def _retention_cutoff(self, now: Optional[int] = None) -> Optional[int]:
        days = self.config.sync.sessions.retention_days
        if days <= 0:
            return None
        return (now if now is not None else now_ms()) - days * DAY_MS

    def _prune_expired_sessions(self, now: Optional[int] = None) -> int:
        cutoff = self._retention_cutoff(now)
        if cutoff is None:
            return 0
        expired = [r for r in self.index.session_records().values() if r.updated_at and r.updated_at < cutoff]
        if not expired:
            return 0
        tx = self.index.transaction()
        for record in expired:
            tx.delete_session(record.session_key, record.path or session_path_for_key(record.session_key))
        tx.commit()
        logger.info(f"Pruned {len(expired)} expired sessions for {self.tenant.key}")
        return len(expired)

    def _stage_document(self, tx: IndexTransaction, document: Document, report: SyncReport) -> bool:
        """Chunk and embed a document into ``tx``. False leaves it stale."""
        chunks = self.chunker.chunk(document.content, document.path)
        vectors = None
        if chunks and self.provider is not None:
            try:
                vectors = self._embed_chunks(chunks, report)
            except EmbeddingError as e:
                logger.warning(f"Skipping {document.path}: {e}")
                return False
        tx.upsert_document(document, chunks, vectors, model=self.model_name)
        report.chunks_written += len(chunks)
        return True

    def _embed_chunks(self, chunks: list[Chunk], report: SyncReport) -> np.ndarray:
        """Vectors for ``chunks``, from the cache where possible."""
        hashes = [c.hash for c in chunks]
        vectors = self.cache.get_many(hashes, self._signature)
        report.cache_hits += sum(1 for h in hashes if h in vectors)
        missing = list(dict.fromkeys(h for h in hashes if h not in vectors))
        if missing:
            report.cache_misses += len(missing)
            text_by_hash = {c.hash: c.text for c in chunks}
            embedded = self._embed_texts([text_by_hash[h] for h in missing])
            fresh = {h: np.asarray(v, dtype=np.float32) for h, v in zip(missing, embedded)}
            self.cache.put_many(fresh, self._signature)
            vectors.update(fresh)
        return np.vstack([vectors[h] for h in hashes]).astype(np.float32)

    def _embed_texts(self, texts: list[str]) -> np.ndarray:
        vectors = self._embed_with_batch(texts)
        if vectors is not None:
            return vectors
        concurrency = 1 if self.provider.kind == ProviderKind.LOCAL else EMBED_CONCURRENCY
        return embed_in_batches(
            self.provider,
            texts,
            self.retry_policy,
            default_timeout(self.provider, query=False),
            self._sleep,
            concurrency=concurrency,
        )

    def _embed_with_batch(self, texts: list[str]) -> Optional[np.ndarray]:
        """Try the batch provider; None means use the synchronous provider."""
        batch = self.batch_provider
        with self._lock:
            enabled = self.batch_enabled
        if batch is None or not enabled:
            return None
        attempts = 1
        try:
            try:
                vectors = batch.embed(texts)
            except BatchPendingError:
                raise
            except BatchEmbeddingError as e:
                if "timed out" not in str(e).lower():
                    raise
                logger.warning(f"{batch.provider_id} batch timed out; retrying once")
                attempts = 2
                vectors = batch.embed(texts)
        except BatchPendingError:
            raise
        except EmbeddingError as e:
            self._record_batch_failure(batch.provider_id, e, attempts)
            return None
        self._reset_batch_failures()
        return np.asarray(vectors, dtype=np.float32)

    def _record_batch_failure(self, provider_id: str, error: Exception, attempts: int) -> None:
        with self._lock:
            self.batch_failures += max(1, attempts)
            self.batch_last_error = str(error)
            self.batch_last_provider = provider_id
            disabled = self.batch_failures >= BATCH_FAILURE_LIMIT
            if disabled:
                self.batch_enabled = False
            count = self.batch_failures
        suffix = "disabling batch" if disabled else "keeping batch enabled"
        logger.warning(
            f"{provider_id} batch failed ({count}/{BATCH_FAILURE_LIMIT}); {suffix}; "
            f"falling back to non-batch embeddings: {error}"
        )

    def _reset_batch_failures(self) -> None:
        with self._lock:
            if self.batch_failures:
                logger.debug("Batch embeddings recovered; resetting failure count")
            self.batch_failures = 0
            self.batch_last_error = None
            self.batch_last_provider = None

    # Search

    def search(
        self,
        query: str,
        opts: Optional[SearchOptions] = None,
        timeout: Optional[float] = None,
    ) -> SearchResponse:
        """Hybrid search over the tenant's notes and sessions.

        Args:
            query: Free text
            opts: Per-call overrides (result count, score floor, filters, mode)
            timeout: How long to wait for a sync triggered by this search

        Returns:
            A ``SearchResponse``; ``unavailable_reason`` is set when neither
            engine could run.
        """
        opts = opts or SearchOptions()
        response = SearchResponse()
        if not self.config.enabled:
            response.unavailable_reason = "memory search disabled"
            return response
        mode = normalize_mode(opts.mode)
        query = (query or "").strip()
        if not query and mode != MODE_LIST:
            return response

        if opts.session_key:
            self.warm_session(opts.session_key)
        if self.config.sync.on_search and self.is_dirty:
            self._sync_before_search(response, SEARCH_SYNC_TIMEOUT if timeout is None else timeout)

        hybrid = self.config.query.hybrid
        max_results = opts.max_results if opts.max_results and opts.max_results > 0 else self.config.query.max_results
        min_score = self.config.query.min_score if opts.min_score is None else min(1.0, max(0.0, opts.min_score))
        candidates = min(MAX_CANDIDATES, max(1, max_results * hybrid.candidate_multiplier))
        sources = tuple(s for s in (opts.sources or self.config.sources) if s in self.config.sources)
        if not sources:
            return response

        if mode == MODE_LIST:
            recent = self.index.recent_files(max_results, sources, opts.path_prefix)
            return self._finish_results(response, recent, min_score, max_results)

        reasons: list[str] = []
        vector_results = None
        if mode != MODE_KEYWORD:
            vector_results = self._vector_candidates(query, candidates, sources, opts.path_prefix, response, reasons)
        response.vector_used = vector_results is not None

        keyword_results = None
        run_keyword = mode in (MODE_KEYWORD, MODE_HYBRID) or (
            mode != MODE_SEMANTIC and (hybrid.enabled or not response.vector_used)
        )
        if run_keyword:
            keyword_results = self._keyword_candidates(query, candidates, sources, opts.path_prefix, response, reasons)
        response.keyword_used = keyword_results is not None

        if not response.vector_used and not response.keyword_used:
            response.unavailable_reason = "; ".join(reasons) or "no search engine available"
            logger.warning(f"Memory search unavailable for {self.tenant.key}: {response.unavailable_reason}")
            return response

        if response.vector_used and response.keyword_used:
            merged = merge_hybrid_results(vector_results, keyword_results, hybrid.vector_weight, hybrid.text_weight)
        elif response.vector_used:
            merged = vector_only_results(vector_results)
        else:
            merged = keyword_only_results(keyword_results)
        return self._finish_results(response, merged, min_score, max_results)

    def _finish_results(self, response, results, min_score: float, max_results: int) -> SearchResponse:
        results = filter_and_limit(results, min_score, max_results)
        for result in results:
            result.snippet = truncate_snippet(result.snippet)
        response.results = apply_injection_budget(results, self.config.query.max_injected_chars)
        return response

    def _sync_before_search(self, response: SearchResponse, timeout: float) -> None:
        future = self.scheduler.request_sync("search")
        try:
            future.result(timeout=timeout)
        except FuturesTimeoutError:
            response.warnings.append("sync still running; results may be stale")
        except CancelledError:
            response.warnings.append("sync cancelled; results may be stale")
        except (MempackError, sqlite3.Error) as e:
            logger.warning(f"Memory sync before search failed: {e}")
            response.warnings.append(f"sync failed: {e}")

    def _keyword_candidates(self, query, limit, sources, path_prefix, response, reasons):
        """Lexical pass over FTS5, or a LIKE scan without it; None when neither ran."""
        if self.index.fts_available:
            fts_query = build_fts_query(query)
            if not fts_query:
                return []
            try:
                rows = self.index.search_keyword(fts_query, limit, sources, path_prefix)
            except sqlite3.Error as e:
                logger.warning(f"Full-text search failed, scanning chunks instead: {e}")
            else:
                scores = keyword_scores(raw for _, raw in rows)
                return [replace(result, text_score=score) for (result, _), score in zip(rows, scores)]
        try:
            results = self.index.scan_keyword(keyword_tokens(query), limit, sources, path_prefix)
        except sqlite3.Error as e:
            reasons.append(f"lexical: {e}")
            return None
        response.keyword_scan = True
        return results

    def _vector_candidates(self, query, limit, sources, path_prefix, response, reasons):
        """Vector pass; returns None when the engine could not run."""
        if self.provider is None:
            reasons.append(f"vector: {self.provider_result.error or 'no embedding provider'}")
            return None
        if not self.vector.is_available():
            reasons.append(f"vector: {self.vector.error}")
            return None
        try:
            query_vector = self._embed_query(query)
        except EmbeddingError as e:
            logger.warning(f"Query embedding failed, using lexical search only: {e}")
            with self._lock:
                self.vector_error = str(e)
            response.warnings.append(f"query embedding failed: {e}")
            reasons.append(f"vector: {e}")
            return None
        with self._lock:
            self.vector_error = None
        return self.vector.search(query_vector, limit, self.model_name, sources, path_prefix)

    def _embed_query(self, query: str) -> np.ndarray:
        content_hash = hash_text(query)
        cached = self.cache.get(content_hash, self._signature)
        if cached is not None:
            return cached
        vector = self._query_embedder.embed([query])[0]
        self.cache.put(content_hash, self._signature, vector)
        return vector

    # Diagnostics

    def check_vector_availability(self) -> bool:
        """Re-check the vector engine (extension load and provider)."""
        self.vector.available = None
        return self.vector.is_available() and self.provider is not None

    def check_embedding_availability(self) -> tuple[bool, Optional[str]]:
        """Embed a short test string. Returns (ok, error)."""
        if self._query_embedder is None:
            return False, self.provider_result.error or "no embedding provider"
        try:
            self._query_embedder.embed(["ping"])
        except EmbeddingError as e:
            return False, str(e)
        return True, None

    def read_file(self, path: str, from_line: Optional[int] = None, lines: Optional[int] = None) -> dict:
        """Read part of an indexable file.

        Raises:
            PathError: The path is malformed or outside the indexable set
            FileNotFoundInStoreError: No such file
        """
        path = normalize_path(path)
        if is_session_path(path):
            if SOURCE_SESSIONS not in self.config.sources:
                raise PathError(f"session transcripts are not enabled: {path}")
            content = self.index.read_session_file(path)
        elif is_indexable_note(path, self.config.extra_paths):
            stored = self.content.read(self.tenant, path)
            content = stored.content if stored else None
        else:
            raise PathError(f"not a memory path: {path}")
        if content is None:
            raise FileNotFoundInStoreError(path)

        all_lines = content.split("\n")
        start = max(1, from_line or 1)
        selected = all_lines[start - 1:]
        if lines is not None:
            selected = selected[:max(0, lines)]
        return {"path": path, "text": "\n".join(selected), "from": start, "lines": len(selected)}

    def status(self) -> MemorySearchStatus:
        """Snapshot of counts, engine availability and sync state."""
        counts = self.index.counts_by_source()
        sources = {source: SourceCounts(*counts.get(source, (0, 0))) for source in self.config.sources}
        for source, (files, chunks) in counts.items():
            sources.setdefault(source, SourceCounts(files, chunks))

        result = self.provider_result
        vector_ok = self.vector.is_available() and self.provider is not None
        with self._lock:
            vector_error = self.vector.error or (None if self.provider else result.error) or self.vector_error
            batch = BatchStatus(
                enabled=self.batch_enabled,
                failures=self.batch_failures,
                limit=BATCH_FAILURE_LIMIT,
                last_error=self.batch_last_error,
                last_provider=self.batch_last_provider,
            )
            dirty, sessions_dirty = self.dirty, self.sessions_dirty
            last_sync_at, last_sync_error = self.last_sync_at, self.last_sync_error

        return MemorySearchStatus(
            tenant=self.tenant.key,
            store_path=str(self.index.path),
            sources=sources,
            cache=CacheStatus(
                enabled=self.cache.enabled,
                entries=self.cache.count() if self.cache.enabled else 0,
                max_entries=self.cache.max_entries,
            ),
            fts=EngineStatus(available=self.index.fts_available, error=self.index.fts_error),
            vector=VectorStatus(
                available=vector_ok,
                error=vector_error,
                dims=self.vector.dimensions() or (self.provider.dimension if self.provider else 0),
                extension_path=self.vector.extension_path,
            ),
            provider=ProviderStatus(
                requested=result.requested,
                provider=self.provider.provider_id if self.provider else None,
                model=self.model_name or None,
                kind=self.provider.kind.value if self.provider else None,
                configured_fallback=self.config.fallback,
                fallback=FallbackStatus(result.fallback_from, result.fallback_reason) if result.fallback_from else None,
                error=result.error or None,
            ),
            batch=batch,
            dirty=dirty,
            sessions_dirty=sessions_dirty,
            last_sync_at=last_sync_at,
            last_sync_error=last_sync_error,
        )
