"""Read-only diagnostics for a memory search manager."""

from dataclasses import asdict, dataclass, field
from typing import Optional


@dataclass
class SourceCounts:
    files: int = 0
    chunks: int = 0


@dataclass
class CacheStatus:
    enabled: bool
    entries: int = 0
    max_entries: int = 0


@dataclass
class EngineStatus:
    """Availability of one search engine."""

    available: bool
    error: Optional[str] = None


@dataclass
class VectorStatus(EngineStatus):
    dims: int = 0
    extension_path: str = ""


@dataclass
class BatchStatus:
    enabled: bool = False
    failures: int = 0
    limit: int = 0
    last_error: Optional[str] = None
    last_provider: Optional[str] = None


@dataclass
class FallbackStatus:
    from_provider: str
    reason: str


@dataclass
class ProviderStatus:
    requested: str
    provider: Optional[str] = None
    model: Optional[str] = None
    kind: Optional[str] = None
    configured_fallback: str = "none"
    fallback: Optional[FallbackStatus] = None
    error: Optional[str] = None


@dataclass
class MemorySearchStatus:
    """Snapshot of a tenant's memory index."""

    tenant: str
    store_path: str
    sources: dict[str, SourceCounts] = field(default_factory=dict)
    cache: CacheStatus = field(default_factory=lambda: CacheStatus(enabled=False))
    fts: EngineStatus = field(default_factory=lambda: EngineStatus(available=False))
    vector: VectorStatus = field(default_factory=lambda: VectorStatus(available=False))
    provider: ProviderStatus = field(default_factory=lambda: ProviderStatus(requested="none"))
    batch: BatchStatus = field(default_factory=BatchStatus)
    dirty: bool = False
    sessions_dirty: bool = False
    last_sync_at: Optional[int] = None
    last_sync_error: Optional[str] = None

    @property
    def total_files(self) -> int:
        return sum(c.files for c in self.sources.values())

    @property
    def total_chunks(self) -> int:
        return sum(c.chunks for c in self.sources.values())

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_files"] = self.total_files
        data["total_chunks"] = self.total_chunks
        return data


def _availability(engine: EngineStatus) -> str:
    if engine.available:
        return "available"
    return f"unavailable ({engine.error})" if engine.error else "unavailable"


def format_status(status: MemorySearchStatus) -> str:
    """Render a status snapshot as plain text."""
    lines = [
        f"Memory: {status.tenant}",
        f"  Store: {status.store_path}",
        f"  Files: {status.total_files}  Chunks: {status.total_chunks}",
    ]
    for source, counts in sorted(status.sources.items()):
        lines.append(f"    {source}: {counts.files} files, {counts.chunks} chunks")

    provider = status.provider
    if provider.provider:
        lines.append(f"  Provider: {provider.provider} ({provider.model}) [requested {provider.requested}]")
    else:
        lines.append(f"  Provider: none [requested {provider.requested}]")
        if provider.error:
            lines.append(f"    error: {provider.error}")
    lines.append(f"  Fallback: {provider.configured_fallback}")
    if provider.fallback:
        lines.append(f"    active: from {provider.fallback.from_provider} ({provider.fallback.reason})")

    lines.append(f"  Lexical search: {_availability(status.fts)}")
    vector = _availability(status.vector)
    if status.vector.dims:
        vector += f", {status.vector.dims} dims"
    lines.append(f"  Vector search: {vector}")

    cache = status.cache
    if cache.enabled:
        bound = cache.max_entries if cache.max_entries else "unbounded"
        lines.append(f"  Cache: {cache.entries} entries (max {bound})")
    else:
        lines.append("  Cache: disabled")

    batch = status.batch
    if batch.enabled:
        lines.append(f"  Batch: enabled, {batch.failures}/{batch.limit} failures")
    elif batch.failures:
        lines.append(f"  Batch: disabled after {batch.failures} failures")
    if batch.last_error:
        lines.append(f"    last error ({batch.last_provider}): {batch.last_error}")

    lines.append(f"  Dirty: notes={status.dirty} sessions={status.sessions_dirty}")
    if status.last_sync_error:
        lines.append(f"  Last sync error: {status.last_sync_error}")
    return "\n".join(lines)
