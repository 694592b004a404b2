"""SentenceTransformer-based local embedding provider."""

import logging

import numpy as np
from sentence_transformers import SentenceTransformer

from mempack.protocols import ProviderKind

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    """In-process embedding provider using sentence-transformers.

    Uses all-MiniLM-L6-v2 by default - a fast, lightweight model
    that produces good quality embeddings for semantic search.
    """

    DEFAULT_MODEL = "all-MiniLM-L6-v2"

    kind = ProviderKind.LOCAL
    provider_id = "local"

    def __init__(self, model_name: str | None = None, device: str | None = None, batch_size: int = 32):
        """Initialize the embedder.

        Args:
            model_name: Name of the sentence-transformers model to use.
                       Defaults to all-MiniLM-L6-v2.
            device: Optional torch device ("cpu", "cuda", ...)
            batch_size: Texts per forward pass
        """
        self._model_name = model_name or self.DEFAULT_MODEL
        self._device = device
        self.batch_size = max(1, batch_size)
        self._model: SentenceTransformer | None = None

    @property
    def model(self) -> SentenceTransformer:
        """Lazy-load the model on first access."""
        if self._model is None:
            logger.info(f"Loading embedding model {self._model_name}...")
            self._model = SentenceTransformer(self._model_name, device=self._device)
        return self._model

    @property
    def dimension(self) -> int:
        """Return the embedding dimension."""
        return int(self.model.get_sentence_embedding_dimension() or 0)

    @property
    def model_name(self) -> str:
        """Return identifier for the model used."""
        return self._model_name

    def load(self) -> None:
        """Load the model now so initialization errors surface early."""
        _ = self.model

    def embed(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings for a batch of texts.

        Args:
            texts: List of text strings to embed

        Returns:
            float32 array of shape (len(texts), embedding_dim)
        """
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)

        embeddings = self.model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(embeddings, dtype=np.float32)
