"""
Configuration for memory search.

Configuration lives in a TOML file (``mempack.toml`` by default). The
``[memory]`` table holds defaults shared by every agent and
``[agents.<id>.memory]`` tables override them per agent:

    [memory]
    sources = ["notes", "sessions"]
    provider = "auto"

    [memory.query.hybrid]
    vector_weight = 0.7
    text_weight = 0.3

    [agents.helper.memory.chunking]
    tokens = 256

Raw tables are merged and then resolved into a ``ResolvedConfig`` where
every value has been validated and clamped. Resolution is pure, so the
result can be cached per fingerprint.
"""

import copy
import hashlib
import json
import os
import threading
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from mempack.errors import ConfigError
from mempack.models import ALL_SOURCES, SOURCE_NOTES

CONFIG_FILENAME = "mempack.toml"
CONFIG_ENV = "MEMPACK_CONFIG"
API_KEY_ENVS = ("MEMPACK_EMBEDDING_API_KEY", "OPENAI_API_KEY")

DEFAULT_STORE_PATH = "~/.mempack/memory.db"
DEFAULT_CHUNK_TOKENS = 400
DEFAULT_CHUNK_OVERLAP = 80
DEFAULT_MAX_RESULTS = 6
DEFAULT_MIN_SCORE = 0.35
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_TEXT_WEIGHT = 0.3
DEFAULT_CANDIDATE_MULTIPLIER = 4
MAX_CANDIDATE_MULTIPLIER = 20
DEFAULT_WATCH_DEBOUNCE_MS = 1500
DEFAULT_DELTA_BYTES = 100_000
DEFAULT_DELTA_MESSAGES = 50
DEFAULT_BATCH_CONCURRENCY = 2
DEFAULT_BATCH_POLL_INTERVAL_MS = 2000
MIN_BATCH_POLL_INTERVAL_MS = 100
DEFAULT_BATCH_TIMEOUT_MINUTES = 60

PROVIDERS = ("auto", "local", "remote", "openai", "none")
FALLBACKS = ("none", "local", "remote", "openai")


@dataclass(frozen=True)
class HybridConfig:
    enabled: bool = True
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    text_weight: float = DEFAULT_TEXT_WEIGHT
    candidate_multiplier: int = DEFAULT_CANDIDATE_MULTIPLIER


@dataclass(frozen=True)
class QueryConfig:
    max_results: int = DEFAULT_MAX_RESULTS
    min_score: float = DEFAULT_MIN_SCORE
    max_injected_chars: int = 0
    hybrid: HybridConfig = field(default_factory=HybridConfig)


@dataclass(frozen=True)
class ChunkingConfig:
    tokens: int = DEFAULT_CHUNK_TOKENS
    overlap: int = DEFAULT_CHUNK_OVERLAP


@dataclass(frozen=True)
class SessionSyncConfig:
    delta_bytes: int = DEFAULT_DELTA_BYTES
    delta_messages: int = DEFAULT_DELTA_MESSAGES
    retention_days: int = 0


@dataclass(frozen=True)
class SyncConfig:
    on_session_start: bool = True
    on_search: bool = True
    watch: bool = True
    watch_debounce_ms: int = DEFAULT_WATCH_DEBOUNCE_MS
    interval_minutes: int = 0
    sessions: SessionSyncConfig = field(default_factory=SessionSyncConfig)


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    max_entries: int = 0


@dataclass(frozen=True)
class BatchConfig:
    enabled: bool = False
    wait: bool = True
    concurrency: int = DEFAULT_BATCH_CONCURRENCY
    poll_interval_ms: int = DEFAULT_BATCH_POLL_INTERVAL_MS
    timeout_minutes: int = DEFAULT_BATCH_TIMEOUT_MINUTES


@dataclass(frozen=True)
class RemoteConfig:
    base_url: str = ""
    api_key: str = ""
    headers: tuple[tuple[str, str], ...] = ()
    batch: BatchConfig = field(default_factory=BatchConfig)


@dataclass(frozen=True)
class VectorConfig:
    enabled: bool = True
    extension_path: str = ""


@dataclass(frozen=True)
class StoreConfig:
    path: str = DEFAULT_STORE_PATH
    vector: VectorConfig = field(default_factory=VectorConfig)


@dataclass(frozen=True)
class ResolvedConfig:
    """Validated memory search configuration."""

    enabled: bool = True
    sources: tuple[str, ...] = (SOURCE_NOTES,)
    extra_paths: tuple[str, ...] = ()
    provider: str = "auto"
    model: str = ""
    fallback: str = "none"
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @property
    def store_path(self) -> Path:
        return Path(self.store.path).expanduser()

    def api_key(self) -> str:
        """Configured API key, falling back to the environment."""
        if self.remote.api_key:
            return self.remote.api_key
        for name in API_KEY_ENVS:
            value = os.environ.get(name, "").strip()
            if value:
                return value
        return ""


# Value coercion


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0", "yes", "no"):
        return value.strip().lower() in ("true", "1", "yes")
    if isinstance(value, int):
        return value != 0
    raise ConfigError(f"{name}: expected a boolean, got {value!r}")


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name}: expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name}: expected an integer, got {value!r}") from e


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name}: expected a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name}: expected a number, got {value!r}") from e


def _as_str_list(value: Any, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{name}: expected a list of strings, got {value!r}")
    out: list[str] = []
    for item in value:
        text = str(item).strip()
        if text and text not in out:
            out.append(text)
    return tuple(out)


def _table(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key}: expected a table, got {value!r}")
    return value


def _clamp(value, low, high):
    return max(low, min(high, value))


def merge_tables(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge two config tables; values in ``override`` win."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_tables(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# Resolution


def normalize_weights(vector_weight: float, text_weight: float) -> tuple[float, float]:
    """Scale hybrid weights so they sum to 1.

    Negative inputs count as 0. When nothing is left the defaults are used.
    """
    vector_weight = max(0.0, vector_weight)
    text_weight = max(0.0, text_weight)
    total = vector_weight + text_weight
    if total <= 0:
        return DEFAULT_VECTOR_WEIGHT, DEFAULT_TEXT_WEIGHT
    return vector_weight / total, text_weight / total


def _resolve_chunking(raw: Mapping[str, Any]) -> ChunkingConfig:
    tokens = _as_int(raw.get("tokens", DEFAULT_CHUNK_TOKENS), "chunking.tokens")
    if tokens < 1:
        tokens = DEFAULT_CHUNK_TOKENS
    overlap = _as_int(raw.get("overlap", DEFAULT_CHUNK_OVERLAP), "chunking.overlap")
    overlap = _clamp(overlap, 0, tokens - 1)
    return ChunkingConfig(tokens=tokens, overlap=overlap)


def _resolve_sync(raw: Mapping[str, Any]) -> SyncConfig:
    sessions = _table(raw, "sessions")
    return SyncConfig(
        on_session_start=_as_bool(raw.get("on_session_start", True), "sync.on_session_start"),
        on_search=_as_bool(raw.get("on_search", True), "sync.on_search"),
        watch=_as_bool(raw.get("watch", True), "sync.watch"),
        watch_debounce_ms=max(
            0, _as_int(raw.get("watch_debounce_ms", DEFAULT_WATCH_DEBOUNCE_MS), "sync.watch_debounce_ms")
        ),
        interval_minutes=max(0, _as_int(raw.get("interval_minutes", 0), "sync.interval_minutes")),
        sessions=SessionSyncConfig(
            delta_bytes=max(
                0, _as_int(sessions.get("delta_bytes", DEFAULT_DELTA_BYTES), "sync.sessions.delta_bytes")
            ),
            delta_messages=max(
                0,
                _as_int(sessions.get("delta_messages", DEFAULT_DELTA_MESSAGES), "sync.sessions.delta_messages"),
            ),
            retention_days=max(0, _as_int(sessions.get("retention_days", 0), "sync.sessions.retention_days")),
        ),
    )


def _resolve_query(raw: Mapping[str, Any]) -> QueryConfig:
    hybrid = _table(raw, "hybrid")
    vector_weight, text_weight = normalize_weights(
        _as_float(hybrid.get("vector_weight", DEFAULT_VECTOR_WEIGHT), "query.hybrid.vector_weight"),
        _as_float(hybrid.get("text_weight", DEFAULT_TEXT_WEIGHT), "query.hybrid.text_weight"),
    )
    multiplier = _as_int(
        hybrid.get("candidate_multiplier", DEFAULT_CANDIDATE_MULTIPLIER), "query.hybrid.candidate_multiplier"
    )
    max_results = _as_int(raw.get("max_results", DEFAULT_MAX_RESULTS), "query.max_results")
    if max_results < 1:
        max_results = DEFAULT_MAX_RESULTS
    return QueryConfig(
        max_results=max_results,
        min_score=_clamp(_as_float(raw.get("min_score", DEFAULT_MIN_SCORE), "query.min_score"), 0.0, 1.0),
        max_injected_chars=max(0, _as_int(raw.get("max_injected_chars", 0), "query.max_injected_chars")),
        hybrid=HybridConfig(
            enabled=_as_bool(hybrid.get("enabled", True), "query.hybrid.enabled"),
            vector_weight=vector_weight,
            text_weight=text_weight,
            candidate_multiplier=_clamp(multiplier, 1, MAX_CANDIDATE_MULTIPLIER),
        ),
    )


def _resolve_remote(raw: Mapping[str, Any]) -> RemoteConfig:
    batch = _table(raw, "batch")
    headers = _table(raw, "headers")
    return RemoteConfig(
        base_url=str(raw.get("base_url", "") or "").strip().rstrip("/"),
        api_key=str(raw.get("api_key", "") or "").strip(),
        headers=tuple(sorted((str(k), str(v)) for k, v in headers.items())),
        batch=BatchConfig(
            enabled=_as_bool(batch.get("enabled", False), "remote.batch.enabled"),
            wait=_as_bool(batch.get("wait", True), "remote.batch.wait"),
            concurrency=max(
                1, _as_int(batch.get("concurrency", DEFAULT_BATCH_CONCURRENCY), "remote.batch.concurrency")
            ),
            poll_interval_ms=max(
                MIN_BATCH_POLL_INTERVAL_MS,
                _as_int(
                    batch.get("poll_interval_ms", DEFAULT_BATCH_POLL_INTERVAL_MS), "remote.batch.poll_interval_ms"
                ),
            ),
            timeout_minutes=max(
                1,
                _as_int(batch.get("timeout_minutes", DEFAULT_BATCH_TIMEOUT_MINUTES), "remote.batch.timeout_minutes"),
            ),
        ),
    )


def resolve_config(
    overrides: Optional[Mapping[str, Any]] = None,
    defaults: Optional[Mapping[str, Any]] = None,
) -> ResolvedConfig:
    """Merge raw tables and validate them into a ``ResolvedConfig``.

    Args:
        overrides: Agent-specific ``memory`` table (wins over defaults)
        defaults: Shared ``memory`` table

    Returns:
        A fully clamped configuration

    Raises:
        ConfigError: If a value has the wrong type or names an unknown
            provider or source.
    """
    raw = merge_tables(defaults or {}, overrides or {})

    sources = _as_str_list(raw.get("sources", [SOURCE_NOTES]), "sources")
    unknown = [s for s in sources if s not in ALL_SOURCES]
    if unknown:
        raise ConfigError(f"sources: unknown source(s) {', '.join(unknown)}")

    provider = str(raw.get("provider", "auto") or "auto").strip().lower()
    if provider not in PROVIDERS:
        raise ConfigError(f"provider: unknown embedding provider {provider!r}")
    fallback = str(raw.get("fallback", "none") or "none").strip().lower()
    if fallback not in FALLBACKS:
        raise ConfigError(f"fallback: unknown embedding provider {fallback!r}")

    store = _table(raw, "store")
    vector = _table(store, "vector")
    cache = _table(raw, "cache")

    return ResolvedConfig(
        enabled=_as_bool(raw.get("enabled", True), "enabled"),
        sources=sources,
        extra_paths=_as_str_list(raw.get("extra_paths", []), "extra_paths"),
        provider=provider,
        model=str(raw.get("model", "") or "").strip(),
        fallback=fallback,
        remote=_resolve_remote(_table(raw, "remote")),
        store=StoreConfig(
            path=str(store.get("path", DEFAULT_STORE_PATH) or DEFAULT_STORE_PATH),
            vector=VectorConfig(
                enabled=_as_bool(vector.get("enabled", True), "store.vector.enabled"),
                extension_path=str(vector.get("extension_path", "") or "").strip(),
            ),
        ),
        chunking=_resolve_chunking(_table(raw, "chunking")),
        sync=_resolve_sync(_table(raw, "sync")),
        query=_resolve_query(_table(raw, "query")),
        cache=CacheConfig(
            enabled=_as_bool(cache.get("enabled", True), "cache.enabled"),
            max_entries=max(0, _as_int(cache.get("max_entries", 0), "cache.max_entries")),
        ),
    )


def config_fingerprint(config: ResolvedConfig) -> str:
    """Stable hash of a resolved config; the API key is hashed, not embedded.

    The key is the effective one, so rotating it in the environment also
    changes the fingerprint.
    """
    data = asdict(config)
    api_key = config.api_key()
    data["remote"]["api_key"] = hashlib.sha256(api_key.encode()).hexdigest() if api_key else ""
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


class ResolvedConfigCache:
    """Memoizes ``resolve_config`` per distinct raw input."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, ResolvedConfig] = {}

    def resolve(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> ResolvedConfig:
        key = hashlib.sha256(
            json.dumps([defaults or {}, overrides or {}], sort_keys=True, default=str).encode()
        ).hexdigest()
        with self._lock:
            cached = self._entries.get(key)
        if cached is not None:
            return cached
        resolved = resolve_config(overrides, defaults)
        with self._lock:
            return self._entries.setdefault(key, resolved)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# Loading


def find_config_path(path: Optional[Path | str] = None) -> Optional[Path]:
    """Locate the TOML file: explicit path, $MEMPACK_CONFIG, then ./mempack.toml."""
    if path:
        return Path(path).expanduser()
    env = os.environ.get(CONFIG_ENV)
    if env:
        return Path(env).expanduser()
    local = Path.cwd() / CONFIG_FILENAME
    return local if local.exists() else None


def read_config_tables(path: Optional[Path | str] = None) -> dict[str, Any]:
    """Read the raw TOML document, or an empty dict when there is none."""
    config_path = find_config_path(path)
    if config_path is None:
        return {}
    if not config_path.exists():
        raise ConfigError(f"config file not found: {config_path}")
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{config_path}: {e}") from e


def load_config(
    path: Optional[Path | str] = None,
    agent_id: str = "",
    cache: Optional[ResolvedConfigCache] = None,
) -> ResolvedConfig:
    """Load and resolve the memory config for an agent."""
    data = read_config_tables(path)
    defaults = data.get("memory") or {}
    overrides: Mapping[str, Any] = {}
    if agent_id:
        agents = data.get("agents") or {}
        overrides = (agents.get(agent_id) or {}).get("memory") or {}
    if cache is not None:
        return cache.resolve(overrides, defaults)
    return resolve_config(overrides, defaults)
