"""Tests for embedding providers: retry, remote HTTP, batch jobs and selection."""

import hashlib
import json
import threading

import numpy as np
import pytest
import requests

from mempack.config import resolve_config
from mempack.embedders import (
    BatchEmbedder,
    RemoteEmbedder,
    RetryingEmbedder,
    RetryPolicy,
    create_batch_provider,
    create_provider,
    embed_batch_with_retry,
    embed_in_batches,
    is_retryable_error,
    provider_signature,
    split_embedding_batches,
)
from mempack.embedders import factory
from mempack.embedders.batch import batch_custom_id
from mempack.errors import (
    BatchEmbeddingError,
    BatchPendingError,
    ConfigError,
    EmbeddingError,
    EmbeddingTimeoutError,
    TransientEmbeddingError,
)
from mempack.models import hash_text
from mempack.protocols import EmbeddingProvider, ProviderKind

from conftest import NO_WAIT_RETRY, FakeEmbedder


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; replies from a queue."""

    def __init__(self, replies=None):
        self.headers: dict[str, str] = {}
        self.replies = list(replies or [])
        self.posts: list[dict] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def embeddings_payload(vectors, order=None):
    order = order if order is not None else range(len(vectors))
    return {"data": [{"index": i, "embedding": vectors[i]} for i in order]}


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0, jitter=0.2)
        assert policy.delay(1, rand=lambda: 0.0) == pytest.approx(0.5)
        assert policy.delay(2, rand=lambda: 0.0) == pytest.approx(1.0)
        assert policy.delay(3, rand=lambda: 0.0) == pytest.approx(2.0)
        assert policy.delay(2, rand=lambda: 1.0) == pytest.approx(1.2)

    def test_capped(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0, jitter=0.2)
        assert policy.delay(10, rand=lambda: 1.0) == pytest.approx(8.0)

    @pytest.mark.parametrize(
        "exc, expected",
        [
            (TransientEmbeddingError("x"), True),
            (EmbeddingTimeoutError("x"), True),
            (EmbeddingError("HTTP 429"), False),
            (requests.ConnectionError("reset"), True),
            (requests.Timeout("slow"), True),
            (RuntimeError("HTTP 503 Service Unavailable"), True),
            (RuntimeError("Rate limit reached"), True),
            (ValueError("Too Many Requests"), True),
            (RuntimeError("Resource has been exhausted (e.g. check quota)"), True),
            (RuntimeError("invalid input"), False),
        ],
    )
    def test_is_retryable_error(self, exc, expected):
        assert is_retryable_error(exc) is expected


class TestEmbedBatchWithRetry:
    def test_retries_transient_failures(self):
        provider = FakeEmbedder(dimension=4)
        provider.failures = [TransientEmbeddingError("429"), TransientEmbeddingError("503")]
        sleeps = []
        vectors = embed_batch_with_retry(provider, ["a", "b"], RetryPolicy(jitter=0.0), sleep=sleeps.append)
        assert vectors.shape == (2, 4)
        assert vectors.dtype == np.float32
        assert len(provider.calls) == 3
        assert sleeps == [pytest.approx(0.5), pytest.approx(1.0)]

    def test_gives_up_after_max_attempts(self):
        provider = FakeEmbedder()
        provider.failures = [TransientEmbeddingError("429")] * 5
        with pytest.raises(TransientEmbeddingError):
            embed_batch_with_retry(provider, ["a"], NO_WAIT_RETRY, sleep=lambda _: None)
        assert len(provider.calls) == 3

    def test_non_retryable_raises_immediately(self):
        provider = FakeEmbedder()
        provider.failures = [EmbeddingError("bad request")]
        with pytest.raises(EmbeddingError, match="bad request"):
            embed_batch_with_retry(provider, ["a"], NO_WAIT_RETRY, sleep=lambda _: None)
        assert len(provider.calls) == 1

    def test_foreign_errors_are_wrapped(self):
        provider = FakeEmbedder()
        provider.failures = [KeyError("oops")]
        with pytest.raises(EmbeddingError, match="fake embedding failed"):
            embed_batch_with_retry(provider, ["a"], NO_WAIT_RETRY, sleep=lambda _: None)

    def test_wrong_vector_count(self):
        class ShortEmbedder(FakeEmbedder):
            def embed(self, texts):
                return super().embed(texts[:1])

        with pytest.raises(EmbeddingError, match="1 vectors for 2 inputs"):
            embed_batch_with_retry(ShortEmbedder(), ["a", "b"], NO_WAIT_RETRY, sleep=lambda _: None)

    def test_empty_input(self):
        provider = FakeEmbedder(dimension=5)
        assert embed_batch_with_retry(provider, []).shape == (0, 5)
        assert provider.calls == []

    def test_timeout(self):
        release = threading.Event()

        class SlowEmbedder(FakeEmbedder):
            def embed(self, texts):
                release.wait(5)
                return super().embed(texts)

        try:
            with pytest.raises(EmbeddingTimeoutError, match="timed out"):
                embed_batch_with_retry(
                    SlowEmbedder(), ["a"], RetryPolicy(max_attempts=1), timeout=0.05, sleep=lambda _: None
                )
        finally:
            release.set()

    def test_retrying_embedder_delegates(self):
        inner = FakeEmbedder(dimension=3, model_name="m")
        inner.failures = [TransientEmbeddingError("503")]
        wrapped = RetryingEmbedder(inner, NO_WAIT_RETRY, sleep=lambda _: None)
        assert isinstance(wrapped, EmbeddingProvider)
        assert wrapped.kind == ProviderKind.LOCAL
        assert wrapped.model_name == "m"
        assert wrapped.dimension == 3
        assert wrapped.embed(["x"]).shape == (1, 3)


class TestEmbedInBatches:
    def test_split_respects_char_bound(self):
        texts = ["a" * 3000, "b" * 3000, "c" * 3000, "d" * 100]
        assert split_embedding_batches(texts, max_chars=8000) == [[0, 1], [2, 3]]

    def test_oversized_text_gets_own_batch(self):
        texts = ["small", "x" * 9000, "tiny"]
        assert split_embedding_batches(texts, max_chars=8000) == [[0], [1], [2]]

    def test_split_empty(self):
        assert split_embedding_batches([]) == []

    def test_rows_keep_input_order(self):
        provider = FakeEmbedder(dimension=4)
        texts = [f"text {i} " + "z" * 40 for i in range(10)]
        vectors = embed_in_batches(provider, texts, NO_WAIT_RETRY, sleep=lambda _: None, max_chars=100)
        assert len(provider.calls) == 5
        assert all(sum(len(t) for t in call) <= 100 for call in provider.calls)
        expected = np.vstack([provider.vector_for(t) for t in texts])
        assert np.allclose(vectors, expected)

    def test_concurrency_is_bounded(self):
        lock = threading.Lock()
        state = {"in_flight": 0, "peak": 0}

        class RemoteFake(FakeEmbedder):
            kind = ProviderKind.REMOTE

            def embed(self, texts):
                with lock:
                    state["in_flight"] += 1
                    state["peak"] = max(state["peak"], state["in_flight"])
                try:
                    threading.Event().wait(0.02)
                    return super().embed(texts)
                finally:
                    with lock:
                        state["in_flight"] -= 1

        provider = RemoteFake()
        texts = ["w" * 50 for _ in range(8)]
        vectors = embed_in_batches(
            provider, texts, NO_WAIT_RETRY, sleep=lambda _: None, max_chars=50, concurrency=2
        )
        assert vectors.shape == (8, 8)
        assert len(provider.calls) == 8
        assert 1 <= state["peak"] <= 2

    def test_failed_request_fails_call(self):
        provider = FakeEmbedder()
        provider.failures = [EmbeddingError("bad request")]
        with pytest.raises(EmbeddingError, match="bad request"):
            embed_in_batches(provider, ["a" * 10, "b" * 10], NO_WAIT_RETRY, sleep=lambda _: None, max_chars=10)

    def test_empty_input(self):
        provider = FakeEmbedder(dimension=3)
        assert embed_in_batches(provider, []).shape == (0, 3)
        assert provider.calls == []


# ---------------------------------------------------------------------------
# Remote HTTP provider
# ---------------------------------------------------------------------------


class TestRemoteEmbedder:
    def test_requires_api_key(self):
        with pytest.raises(EmbeddingError, match="API key"):
            RemoteEmbedder(api_key="", session=FakeSession())

    def test_embed_orders_by_index(self):
        session = FakeSession([FakeResponse(payload=embeddings_payload([[1, 0], [0, 1]], order=[1, 0]))])
        embedder = RemoteEmbedder(api_key="k", base_url="https://example.test/v1/", session=session)
        vectors = embedder.embed(["a", "b"])

        np.testing.assert_allclose(vectors, [[1, 0], [0, 1]])
        assert embedder.dimension == 2
        assert session.headers["Authorization"] == "Bearer k"
        assert session.posts[0]["url"] == "https://example.test/v1/embeddings"
        assert session.posts[0]["json"] == {"model": "text-embedding-3-small", "input": ["a", "b"]}

    def test_extra_headers(self):
        session = FakeSession()
        RemoteEmbedder(api_key="k", headers={"X-Org": "acme"}, session=session)
        assert session.headers["X-Org"] == "acme"

    def test_known_dimension_before_first_call(self):
        embedder = RemoteEmbedder(model_name="text-embedding-3-large", api_key="k", session=FakeSession())
        assert embedder.dimension == 3072

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient_http_errors(self, status):
        session = FakeSession([FakeResponse(status, text="busy")])
        with pytest.raises(TransientEmbeddingError, match=str(status)):
            RemoteEmbedder(api_key="k", session=session).embed(["a"])

    def test_client_error_is_not_transient(self):
        session = FakeSession([FakeResponse(400, text="bad input")])
        with pytest.raises(EmbeddingError) as info:
            RemoteEmbedder(api_key="k", session=session).embed(["a"])
        assert not isinstance(info.value, TransientEmbeddingError)

    def test_network_errors(self):
        session = FakeSession([requests.Timeout("slow"), requests.ConnectionError("reset")])
        embedder = RemoteEmbedder(api_key="k", session=session)
        with pytest.raises(EmbeddingTimeoutError):
            embedder.embed(["a"])
        with pytest.raises(TransientEmbeddingError):
            embedder.embed(["a"])

    def test_malformed_response(self):
        session = FakeSession([FakeResponse(payload={"nope": []})])
        with pytest.raises(EmbeddingError, match="malformed"):
            RemoteEmbedder(api_key="k", session=session).embed(["a"])

    def test_count_mismatch(self):
        session = FakeSession([FakeResponse(payload=embeddings_payload([[1, 0]]))])
        with pytest.raises(EmbeddingError, match="expected 2 embeddings"):
            RemoteEmbedder(api_key="k", session=session).embed(["a", "b"])


# ---------------------------------------------------------------------------
# Batch provider
# ---------------------------------------------------------------------------


class BatchSession(FakeSession):
    """Fake OpenAI files/batches API.

    Each input gets the embedding ``[len(text), 1.0]``.
    """

    def __init__(self, statuses=("completed",), create_status="validating", drop_outputs=0):
        super().__init__()
        self.statuses = list(statuses)
        self.create_status = create_status
        self.drop_outputs = drop_outputs
        self.uploaded: list[dict] = []
        self.calls: list[tuple[str, str]] = []

    def request(self, method, url, timeout=None, **kwargs):
        path = url.split("/v1", 1)[1]
        self.calls.append((method, path))
        if method == "POST" and path == "/files":
            _, raw, _ = kwargs["files"]["file"]
            self.uploaded = [json.loads(line) for line in raw.decode().splitlines()]
            return FakeResponse(payload={"id": "file-in"})
        if method == "POST" and path == "/batches":
            return FakeResponse(payload={"id": "batch-1", "status": self.create_status, "output_file_id": None})
        if method == "GET" and path == "/batches/batch-1":
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return FakeResponse(payload={"id": "batch-1", "status": status, "output_file_id": "file-out"})
        if method == "GET" and path == "/files/file-out/content":
            items = self.uploaded[self.drop_outputs:]
            lines = [
                json.dumps(
                    {
                        "custom_id": item["custom_id"],
                        "response": {
                            "status_code": 200,
                            "body": {"data": [{"embedding": [len(item["body"]["input"]), 1.0]}]},
                        },
                    }
                )
                for item in reversed(items)
            ]
            return FakeResponse(text="\n".join(lines))
        return FakeResponse(404, text="not found")


def make_batch(session, **kwargs):
    remote = RemoteEmbedder(api_key="k", base_url="https://example.test/v1", session=session)
    kwargs.setdefault("sleep", lambda _: None)
    return BatchEmbedder(remote, **kwargs)


class TestBatchEmbedder:
    def test_custom_id(self):
        expected = hashlib.sha256(f"{hash_text('hello')}:3".encode()).hexdigest()
        assert batch_custom_id("hello", 3) == expected
        assert batch_custom_id("hello", 3) != batch_custom_id("hello", 4)

    def test_submit_poll_download(self):
        session = BatchSession(statuses=["in_progress", "finalizing", "completed"])
        sleeps = []
        batch = make_batch(session, sleep=sleeps.append, poll_interval_ms=500)
        vectors = batch.embed(["a", "bbb", "cc"])

        np.testing.assert_allclose(vectors, [[1, 1], [3, 1], [2, 1]])
        assert batch.kind == ProviderKind.REMOTE_BATCH
        assert batch.provider_id == "openai-batch"
        assert sleeps == [0.5, 0.5]
        assert [line["body"]["input"] for line in session.uploaded] == ["a", "bbb", "cc"]
        assert all(line["url"] == "/v1/embeddings" for line in session.uploaded)

    def test_failed_batch(self):
        session = BatchSession(statuses=["failed"])
        with pytest.raises(BatchEmbeddingError, match="failed"):
            make_batch(session).embed(["a"])

    def test_timeout(self):
        session = BatchSession(statuses=["in_progress"])
        now = [0.0]

        def sleep(seconds):
            now[0] += seconds

        batch = make_batch(session, sleep=sleep, clock=lambda: now[0], poll_interval_ms=60_000, timeout_minutes=2)
        with pytest.raises(BatchEmbeddingError, match="timed out after 2 minutes"):
            batch.embed(["a"])

    def test_no_wait(self):
        session = BatchSession()
        with pytest.raises(BatchPendingError) as info:
            make_batch(session, wait=False).embed(["a"])
        assert info.value.batch_id == "batch-1"
        assert ("GET", "/batches/batch-1") not in session.calls

    def test_missing_output(self):
        session = BatchSession(drop_outputs=1)
        with pytest.raises(BatchEmbeddingError, match="missing output"):
            make_batch(session).embed(["a", "b"])

    def test_http_error_is_batch_error(self):
        class BrokenSession(BatchSession):
            def request(self, method, url, timeout=None, **kwargs):
                return FakeResponse(500, text="upstream down")

        with pytest.raises(BatchEmbeddingError, match="HTTP 500"):
            make_batch(BrokenSession()).embed(["a"])


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


class TestCreateProvider:
    @pytest.fixture(autouse=True)
    def no_env_keys(self, monkeypatch):
        monkeypatch.delenv("MEMPACK_EMBEDDING_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    @pytest.fixture
    def built(self, monkeypatch):
        """Replace build_provider; names listed in ``failing`` raise."""
        state = {"names": [], "failing": {}}

        def fake_build(name, config, model=""):
            state["names"].append(name)
            if name in state["failing"]:
                raise state["failing"][name]
            return FakeEmbedder(model_name=f"{name}-model")

        monkeypatch.setattr(factory, "build_provider", fake_build)
        return state

    def test_none(self, built):
        result = create_provider(resolve_config({"provider": "none"}))
        assert result.provider is None
        assert "disabled" in result.error
        assert built["names"] == []

    def test_auto_without_key_is_local(self, built):
        result = create_provider(resolve_config({"provider": "auto"}))
        assert built["names"] == ["local"]
        assert result.requested == "auto"
        assert result.fallback_from == ""

    def test_auto_with_key_is_remote(self, built):
        create_provider(resolve_config({"provider": "auto", "remote": {"api_key": "k"}}))
        assert built["names"] == ["remote"]

    def test_fallback_on_init_failure(self, built):
        built["failing"]["local"] = RuntimeError("no torch")
        result = create_provider(resolve_config({"provider": "local", "fallback": "openai"}))
        assert built["names"] == ["local", "openai"]
        assert result.provider.model_name == "openai-model"
        assert result.fallback_from == "local"
        assert result.fallback_reason == "no torch"

    def test_no_fallback_configured(self, built):
        built["failing"]["local"] = RuntimeError("no torch")
        result = create_provider(resolve_config({"provider": "local"}))
        assert result.provider is None
        assert result.error == "local: no torch"

    def test_fallback_also_fails(self, built):
        built["failing"]["local"] = RuntimeError("no torch")
        built["failing"]["openai"] = RuntimeError("no key")
        result = create_provider(resolve_config({"provider": "local", "fallback": "openai"}))
        assert result.provider is None
        assert result.error == "local: no torch; openai: no key"

    def test_remote_aliases_do_not_fall_back_to_each_other(self, built):
        built["failing"]["remote"] = RuntimeError("no key")
        result = create_provider(resolve_config({"provider": "remote", "fallback": "openai"}))
        assert built["names"] == ["remote"]
        assert result.provider is None

    def test_config_errors_propagate(self, built):
        built["failing"]["local"] = ConfigError("bad")
        with pytest.raises(ConfigError):
            create_provider(resolve_config({"provider": "local", "fallback": "openai"}))

    def test_remote_without_key_fails_to_build(self):
        with pytest.raises(EmbeddingError):
            factory.build_provider("openai", resolve_config({"provider": "openai"}))


class TestProviderHelpers:
    def test_signature_depends_on_model(self):
        assert provider_signature(FakeEmbedder(model_name="a")) != provider_signature(FakeEmbedder(model_name="b"))
        assert provider_signature(FakeEmbedder(model_name="a")) == provider_signature(FakeEmbedder(model_name="a"))

    def test_batch_provider_only_when_enabled(self):
        remote = RemoteEmbedder(api_key="k", session=FakeSession())
        assert create_batch_provider(resolve_config(), remote) is None
        enabled = resolve_config({"remote": {"batch": {"enabled": True, "wait": False}}})
        batch = create_batch_provider(enabled, remote)
        assert isinstance(batch, BatchEmbedder)
        assert batch.wait is False
        assert create_batch_provider(enabled, FakeEmbedder()) is None
        assert create_batch_provider(enabled, None) is None
