"""Protocol for embedding model providers."""

from enum import Enum
from typing import Protocol, runtime_checkable

import numpy as np


class ProviderKind(str, Enum):
    """The transport a provider uses to produce vectors."""

    LOCAL = "local"
    REMOTE = "remote"
    REMOTE_BATCH = "remote-batch"


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol for embedding model providers.

    Variants are distinguished by ``kind`` rather than by type checks, so
    wrappers such as the retry layer can compose over any of them.
    """

    @property
    def kind(self) -> ProviderKind:
        """Return the provider variant."""
        ...

    @property
    def provider_id(self) -> str:
        """Return a short identifier such as 'local' or 'openai'."""
        ...

    @property
    def dimension(self) -> int:
        """Return the embedding dimension (0 when not yet known)."""
        ...

    @property
    def model_name(self) -> str:
        """Return identifier for the model used."""
        ...

    def embed(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings for a batch of texts.

        Returns: numpy array of shape (len(texts), embedding_dim)
        """
        ...
