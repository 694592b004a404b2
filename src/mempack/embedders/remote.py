"""OpenAI-compatible HTTP embedding provider."""

import logging
from typing import Mapping, Optional

import numpy as np
import requests

from mempack.errors import EmbeddingError, EmbeddingTimeoutError, TransientEmbeddingError
from mempack.protocols import ProviderKind

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "text-embedding-3-small"

KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


def raise_for_response(resp: requests.Response, what: str) -> None:
    """Map an HTTP error response onto the embedding error taxonomy."""
    if resp.status_code < 400:
        return
    detail = resp.text[:300].strip()
    message = f"{what} failed: HTTP {resp.status_code} {detail}".strip()
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientEmbeddingError(message)
    raise EmbeddingError(message)


class RemoteEmbedder:
    """Synchronous embedding over ``POST {base_url}/embeddings``.

    Works with OpenAI and any server exposing the same request shape.
    """

    kind = ProviderKind.REMOTE
    provider_id = "openai"

    def __init__(
        self,
        model_name: str = "",
        base_url: str = "",
        api_key: str = "",
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise EmbeddingError("remote embeddings require an API key")
        self._model_name = model_name or DEFAULT_MODEL
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {api_key}", **dict(headers or {})})
        self._dimension = KNOWN_DIMENSIONS.get(self._model_name, 0)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, texts: list[str]) -> np.ndarray:
        """Embed a batch of texts in one request.

        Raises:
            EmbeddingTimeoutError: The request timed out
            TransientEmbeddingError: Rate limit, 5xx or connection failure
            EmbeddingError: Any other failure
        """
        if not texts:
            return np.zeros((0, self._dimension), dtype=np.float32)
        try:
            resp = self.session.post(
                f"{self.base_url}/embeddings",
                json={"model": self._model_name, "input": texts},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise EmbeddingTimeoutError(f"embedding request timed out after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise TransientEmbeddingError(f"embedding request failed: {e}") from e
        except requests.RequestException as e:
            raise EmbeddingError(f"embedding request failed: {e}") from e

        raise_for_response(resp, "embedding request")
        try:
            data = resp.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"malformed embedding response: {e}") from e
        return self.parse_vectors(data, len(texts))

    def parse_vectors(self, data: list[dict], expected: int) -> np.ndarray:
        """Order ``data`` items by ``index`` and stack their embeddings."""
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        if len(ordered) != expected:
            raise EmbeddingError(f"expected {expected} embeddings, got {len(ordered)}")
        vectors = np.asarray([item["embedding"] for item in ordered], dtype=np.float32)
        if vectors.ndim == 2 and vectors.shape[1]:
            self._dimension = int(vectors.shape[1])
        return vectors
