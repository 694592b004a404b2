"""Embedding providers for vector generation.

The local sentence-transformers provider is imported lazily by
``build_provider`` so remote-only installs never load torch.
"""

from mempack.embedders.batch import BatchEmbedder
from mempack.embedders.factory import (
    ProviderResult,
    build_provider,
    create_batch_provider,
    create_provider,
    provider_signature,
)
from mempack.embedders.remote import RemoteEmbedder
from mempack.embedders.retry import (
    RetryingEmbedder,
    RetryPolicy,
    embed_batch_with_retry,
    embed_in_batches,
    is_retryable_error,
    split_embedding_batches,
)

__all__ = [
    "BatchEmbedder",
    "ProviderResult",
    "RemoteEmbedder",
    "RetryPolicy",
    "RetryingEmbedder",
    "build_provider",
    "create_batch_provider",
    "create_provider",
    "embed_batch_with_retry",
    "embed_in_batches",
    "is_retryable_error",
    "provider_signature",
    "split_embedding_batches",
]
