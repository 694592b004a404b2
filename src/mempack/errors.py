"""Exception hierarchy for mempack.

Callers can catch ``MempackError`` for anything raised by the library, or
one of the narrower classes below when they need to tell configuration
mistakes apart from transient provider trouble.
"""


class MempackError(Exception):
    """Base class for all mempack errors."""


class ConfigError(MempackError):
    """Invalid configuration (unknown provider, malformed values)."""


class PathError(MempackError):
    """A virtual path is malformed or not indexable."""


class FileNotFoundInStoreError(MempackError):
    """The requested path does not exist in the content store."""

    def __init__(self, path: str):
        super().__init__(f"file not found: {path}")
        self.path = path


class EmbeddingError(MempackError):
    """An embedding provider failed to produce vectors."""


class TransientEmbeddingError(EmbeddingError):
    """A provider failure worth retrying (rate limit, 5xx, network)."""


class EmbeddingTimeoutError(TransientEmbeddingError):
    """An embedding call did not finish within its deadline."""


class BatchEmbeddingError(EmbeddingError):
    """A remote batch job failed, expired or returned incomplete output."""


class BatchPendingError(BatchEmbeddingError):
    """A batch job was submitted but not waited for."""

    def __init__(self, batch_id: str):
        super().__init__(f"batch {batch_id} submitted, results not yet available")
        self.batch_id = batch_id


class IndexCommitError(MempackError):
    """Staged index operations could not be committed; nothing was applied."""
