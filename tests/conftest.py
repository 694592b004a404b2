"""
Shared pytest fixtures for mempack tests.

Provides fake embedding providers so no model is downloaded and no
network is touched.
"""

import hashlib
import threading

import numpy as np
import pytest

from mempack.config import merge_tables, resolve_config
from mempack.embedders import ProviderResult
from mempack.embedders.retry import RetryPolicy
from mempack.manager import MemorySearchManager
from mempack.models import Tenant
from mempack.protocols import ProviderKind
from mempack.storage import ContentStore


class FakeEmbedder:
    """
    Deterministic embedding provider for testing.

    Texts containing one of the ``rules`` keys get that fixed vector;
    anything else gets a vector derived from its hash.
    """

    kind = ProviderKind.LOCAL
    provider_id = "fake"

    def __init__(self, dimension: int = 8, rules: dict[str, list[float]] | None = None, model_name: str = "fake-model"):
        self.dimension = dimension
        self.model_name = model_name
        self.rules = rules or {}
        self.calls: list[list[str]] = []
        self.failures: list[Exception] = []

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]

    def vector_for(self, text: str) -> np.ndarray:
        for key, vector in self.rules.items():
            if key in text:
                out = np.zeros(self.dimension, dtype=np.float32)
                out[: len(vector)] = vector
                return out
        h = hashlib.md5(text.encode()).digest()
        values = [b / 255.0 for b in (h * ((self.dimension // len(h)) + 1))[: self.dimension]]
        return np.asarray(values, dtype=np.float32)

    def embed(self, texts: list[str]) -> np.ndarray:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        return np.vstack([self.vector_for(t) for t in texts])


class BlockingEmbedder(FakeEmbedder):
    """FakeEmbedder that waits on an event once ``armed`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.armed = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, texts: list[str]) -> np.ndarray:
        if self.armed:
            self.entered.set()
            self.release.wait(10)
        return super().embed(texts)


NO_WAIT_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def tenant():
    return Tenant("test-bridge", "test-login")


@pytest.fixture
def make_config(tmp_path):
    """Build a ResolvedConfig pointing at a temporary store."""

    def _make(overrides: dict | None = None):
        base = {
            "provider": "local",
            "store": {"path": str(tmp_path / "memory.db")},
            "sync": {"watch": False},
        }
        return resolve_config(merge_tables(base, overrides or {}))

    return _make


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def make_manager(tenant, make_config):
    """Build managers backed by a fake provider; all are closed after the test."""
    managers: list[MemorySearchManager] = []

    def _make(overrides: dict | None = None, provider=None, **kwargs):
        config = make_config(overrides)
        if provider is None:
            provider = FakeEmbedder()
        if not isinstance(provider, ProviderResult):
            provider = ProviderResult(provider, config.provider)
        kwargs.setdefault("retry_policy", NO_WAIT_RETRY)
        kwargs.setdefault("sleep", lambda _: None)
        manager = MemorySearchManager(tenant, config, provider=provider, **kwargs)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.close()


@pytest.fixture
def content(make_config):
    store = ContentStore(make_config().store_path)
    store.initialize()
    return store
