"""Bounded retry with backoff around any embedding provider."""

import logging
import random
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import requests

from mempack.errors import EmbeddingError, EmbeddingTimeoutError, TransientEmbeddingError
from mempack.protocols import EmbeddingProvider, ProviderKind

logger = logging.getLogger(__name__)

RETRYABLE_PATTERN = re.compile(
    r"rate[_ ]limit|too many requests|429|resource has been exhausted|5\d\d|cloudflare",
    re.IGNORECASE,
)

# Per-call deadlines in seconds
QUERY_TIMEOUT_REMOTE = 60.0
QUERY_TIMEOUT_LOCAL = 5 * 60.0
BATCH_TIMEOUT_REMOTE = 2 * 60.0
BATCH_TIMEOUT_LOCAL = 10 * 60.0

# Size bound for one embedding request, in characters (about one per token)
EMBED_BATCH_MAX_CHARS = 8000
# Requests in flight at once for remote providers
EMBED_CONCURRENCY = 4


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.2

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return min(self.max_delay, delay * (1 + self.jitter * rand()))


DEFAULT_POLICY = RetryPolicy()


def is_retryable_error(exc: BaseException) -> bool:
    """Whether an embedding failure is worth another attempt."""
    if isinstance(exc, TransientEmbeddingError):
        return True
    if isinstance(exc, EmbeddingError):
        # Already classified by the provider
        return False
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    return bool(RETRYABLE_PATTERN.search(str(exc)))


def default_timeout(provider: EmbeddingProvider, query: bool) -> Optional[float]:
    """Deadline for one call; batch jobs enforce their own timeout."""
    if provider.kind == ProviderKind.REMOTE_BATCH:
        return None
    local = provider.kind == ProviderKind.LOCAL
    if query:
        return QUERY_TIMEOUT_LOCAL if local else QUERY_TIMEOUT_REMOTE
    return BATCH_TIMEOUT_LOCAL if local else BATCH_TIMEOUT_REMOTE


def _call_with_timeout(provider: EmbeddingProvider, texts: list[str], timeout: Optional[float]) -> np.ndarray:
    if not timeout:
        return provider.embed(texts)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mempack-embed")
    try:
        return pool.submit(provider.embed, texts).result(timeout=timeout)
    except FuturesTimeoutError as e:
        raise EmbeddingTimeoutError(f"{provider.provider_id} embedding timed out after {timeout:.0f}s") from e
    finally:
        # A timed out call keeps running in the background; do not wait on it
        pool.shutdown(wait=False)


def embed_batch_with_retry(
    provider: EmbeddingProvider,
    texts: list[str],
    policy: RetryPolicy = DEFAULT_POLICY,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> np.ndarray:
    """Embed ``texts``, retrying transient failures with backoff.

    Args:
        provider: Any embedding provider
        texts: Inputs to embed
        policy: Attempt bound and backoff shape
        timeout: Per-attempt deadline in seconds (None for no deadline)
        sleep: Injectable for tests

    Returns:
        float32 array with one row per input

    Raises:
        EmbeddingError: The last failure once retries are exhausted, or
            the first non-retryable one.
    """
    if not texts:
        return np.zeros((0, provider.dimension or 0), dtype=np.float32)

    attempt = 1
    while True:
        try:
            vectors = np.asarray(_call_with_timeout(provider, texts, timeout), dtype=np.float32)
            if vectors.ndim != 2 or vectors.shape[0] != len(texts):
                raise EmbeddingError(
                    f"{provider.provider_id} returned {vectors.shape[0] if vectors.ndim else 0} "
                    f"vectors for {len(texts)} inputs"
                )
            return vectors
        except Exception as e:
            if attempt >= policy.max_attempts or not is_retryable_error(e):
                if isinstance(e, EmbeddingError):
                    raise
                raise EmbeddingError(f"{provider.provider_id} embedding failed: {e}") from e
            delay = policy.delay(attempt)
            logger.warning(
                f"Embedding attempt {attempt}/{policy.max_attempts} failed ({e}); retrying in {delay:.2f}s"
            )
            sleep(delay)
            attempt += 1


def split_embedding_batches(texts: list[str], max_chars: int = EMBED_BATCH_MAX_CHARS) -> list[list[int]]:
    """Group input indices into consecutive runs of at most ``max_chars`` characters.

    A text longer than the bound gets a batch of its own.
    """
    batches: list[list[int]] = []
    current: list[int] = []
    size = 0
    for i, text in enumerate(texts):
        if current and size + len(text) > max_chars:
            batches.append(current)
            current, size = [], 0
        current.append(i)
        size += len(text)
    if current:
        batches.append(current)
    return batches


def embed_in_batches(
    provider: EmbeddingProvider,
    texts: list[str],
    policy: RetryPolicy = DEFAULT_POLICY,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    max_chars: int = EMBED_BATCH_MAX_CHARS,
    concurrency: int = 1,
) -> np.ndarray:
    """Embed ``texts`` as size-bounded requests, each with its own retries.

    At most ``concurrency`` requests run at once. Rows come back in input
    order; the first failing request fails the whole call.
    """
    if not texts:
        return np.zeros((0, provider.dimension or 0), dtype=np.float32)
    batches = split_embedding_batches(texts, max_chars)

    def run(indices: list[int]) -> np.ndarray:
        return embed_batch_with_retry(provider, [texts[i] for i in indices], policy, timeout, sleep)

    if concurrency <= 1 or len(batches) == 1:
        parts = [run(indices) for indices in batches]
    else:
        with ThreadPoolExecutor(max_workers=min(concurrency, len(batches)), thread_name_prefix="mempack-embed") as pool:
            parts = list(pool.map(run, batches))
    logger.debug(f"Embedded {len(texts)} texts in {len(batches)} requests")
    return np.vstack(parts).astype(np.float32)


class RetryingEmbedder:
    """Provider wrapper that applies ``embed_batch_with_retry`` to every call."""

    def __init__(
        self,
        inner: EmbeddingProvider,
        policy: RetryPolicy = DEFAULT_POLICY,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inner = inner
        self.policy = policy
        self.timeout = timeout
        self._sleep = sleep

    @property
    def kind(self) -> ProviderKind:
        return self.inner.kind

    @property
    def provider_id(self) -> str:
        return self.inner.provider_id

    @property
    def model_name(self) -> str:
        return self.inner.model_name

    @property
    def dimension(self) -> int:
        return self.inner.dimension

    def embed(self, texts: list[str]) -> np.ndarray:
        return embed_batch_with_retry(self.inner, texts, self.policy, self.timeout, self._sleep)
