"""Provider selection with initialization fallback."""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from mempack.config import ResolvedConfig
from mempack.embedders.batch import BatchEmbedder
from mempack.embedders.remote import RemoteEmbedder
from mempack.embedders.retry import QUERY_TIMEOUT_REMOTE
from mempack.errors import ConfigError
from mempack.protocols import EmbeddingProvider, ProviderKind

logger = logging.getLogger(__name__)


@dataclass
class ProviderResult:
    """Outcome of provider selection.

    ``provider`` is None when embeddings are disabled or every candidate
    failed; ``error`` then explains why.
    """

    provider: Optional[EmbeddingProvider]
    requested: str
    fallback_from: str = ""
    fallback_reason: str = ""
    error: str = ""


def provider_signature(provider: EmbeddingProvider) -> str:
    """Identity of the vectors a provider produces, for cache keys."""
    base_url = getattr(provider, "base_url", "")
    raw = f"{provider.provider_id}|{provider.model_name}|{base_url}"
    return hashlib.sha256(raw.encode()).hexdigest()


def build_provider(name: str, config: ResolvedConfig, model: str = "") -> EmbeddingProvider:
    """Instantiate one provider variant by name.

    Raises:
        ConfigError: Unknown provider name
    """
    if name == "local":
        # Imported lazily: loading torch is slow and not needed for remote use
        from mempack.embedders.sentence_transformer import SentenceTransformerEmbedder

        embedder = SentenceTransformerEmbedder(model or None)
        embedder.load()
        return embedder
    if name in ("remote", "openai"):
        return RemoteEmbedder(
            model_name=model,
            base_url=config.remote.base_url,
            api_key=config.api_key(),
            headers=dict(config.remote.headers),
            timeout=QUERY_TIMEOUT_REMOTE,
        )
    raise ConfigError(f"unknown embedding provider {name!r}")


def create_provider(config: ResolvedConfig) -> ProviderResult:
    """Pick the embedding provider for a config.

    ``auto`` prefers a remote provider when an API key is available and
    the local model otherwise. If the chosen provider fails to initialize
    and a fallback is configured, the fallback is used and the reason is
    recorded. Later per-call failures never trigger the fallback.
    """
    requested = config.provider
    if requested == "none":
        return ProviderResult(None, requested, error="embeddings disabled by config")

    primary = requested
    if primary == "auto":
        primary = "remote" if config.api_key() else "local"

    try:
        return ProviderResult(build_provider(primary, config, config.model), requested)
    except ConfigError:
        raise
    except Exception as e:
        reason = str(e) or type(e).__name__
        logger.warning(f"Embedding provider {primary} failed to initialize: {reason}")
        fallback = config.fallback
        if fallback == "none" or fallback == primary or {fallback, primary} <= {"remote", "openai"}:
            return ProviderResult(None, requested, error=f"{primary}: {reason}")

    try:
        provider = build_provider(fallback, config)
    except ConfigError:
        raise
    except Exception as e:
        logger.warning(f"Fallback embedding provider {fallback} failed to initialize: {e}")
        return ProviderResult(None, requested, error=f"{primary}: {reason}; {fallback}: {e}")
    logger.info(f"Using fallback embedding provider {fallback} ({reason})")
    return ProviderResult(provider, requested, fallback_from=primary, fallback_reason=reason)


def create_batch_provider(config: ResolvedConfig, provider: Optional[EmbeddingProvider]) -> Optional[BatchEmbedder]:
    """Wrap a remote provider for batch indexing when batch mode is enabled."""
    batch = config.remote.batch
    if not batch.enabled or provider is None or provider.kind != ProviderKind.REMOTE:
        return None
    if not isinstance(provider, RemoteEmbedder):
        return None
    return BatchEmbedder(
        provider,
        concurrency=batch.concurrency,
        poll_interval_ms=batch.poll_interval_ms,
        timeout_minutes=batch.timeout_minutes,
        wait=batch.wait,
    )
