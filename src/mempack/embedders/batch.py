"""Submit-then-poll embedding through the OpenAI Batch API."""

import hashlib
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import numpy as np
import requests

from mempack.errors import BatchEmbeddingError, BatchPendingError, EmbeddingError
from mempack.embedders.remote import RemoteEmbedder, raise_for_response
from mempack.models import hash_text
from mempack.protocols import ProviderKind

logger = logging.getLogger(__name__)

BATCH_ENDPOINT = "/v1/embeddings"
COMPLETION_WINDOW = "24h"
MAX_REQUESTS_PER_BATCH = 50_000
TERMINAL_FAILURES = ("failed", "expired", "cancelled", "cancelling")


def batch_custom_id(text: str, index: int) -> str:
    return hashlib.sha256(f"{hash_text(text)}:{index}".encode()).hexdigest()


class BatchEmbedder:
    """Embeds large inputs as asynchronous batch jobs.

    Inputs are split into jobs of at most ``MAX_REQUESTS_PER_BATCH`` lines;
    up to ``concurrency`` jobs are in flight at once. Each job is polled
    every ``poll_interval_ms`` until it completes, fails, or has been
    outstanding for ``timeout_minutes``.

    With ``wait=False`` jobs are submitted but not polled, and
    ``BatchPendingError`` tells the caller to try again on a later pass.
    """

    kind = ProviderKind.REMOTE_BATCH

    def __init__(
        self,
        remote: RemoteEmbedder,
        concurrency: int = 2,
        poll_interval_ms: int = 2000,
        timeout_minutes: int = 60,
        wait: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.remote = remote
        self.concurrency = max(1, concurrency)
        self.poll_interval = max(0.1, poll_interval_ms / 1000)
        self.timeout_seconds = max(1, timeout_minutes) * 60
        self.wait = wait
        self._sleep = sleep
        self._clock = clock

    @property
    def provider_id(self) -> str:
        return f"{self.remote.provider_id}-batch"

    @property
    def model_name(self) -> str:
        return self.remote.model_name

    @property
    def dimension(self) -> int:
        return self.remote.dimension

    @property
    def session(self) -> requests.Session:
        return self.remote.session

    def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        groups = [
            list(range(start, min(start + MAX_REQUESTS_PER_BATCH, len(texts))))
            for start in range(0, len(texts), MAX_REQUESTS_PER_BATCH)
        ]
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(groups))) as pool:
            parts = list(pool.map(lambda idx: self._run_job(texts, idx), groups))
        return np.vstack(parts).astype(np.float32)

    def _run_job(self, texts: list[str], indices: list[int]) -> np.ndarray:
        ids = [batch_custom_id(texts[i], i) for i in indices]
        lines = [
            json.dumps(
                {
                    "custom_id": custom_id,
                    "method": "POST",
                    "url": BATCH_ENDPOINT,
                    "body": {"model": self.model_name, "input": texts[i]},
                }
            )
            for custom_id, i in zip(ids, indices)
        ]
        file_id = self._upload("\n".join(lines) + "\n")
        batch = self._create(file_id)
        batch_id = batch["id"]
        logger.debug(f"Submitted embedding batch {batch_id} ({len(indices)} requests)")

        if batch.get("status") != "completed":
            if not self.wait:
                raise BatchPendingError(batch_id)
            batch = self._poll(batch_id)

        output_file_id = batch.get("output_file_id")
        if not output_file_id:
            raise BatchEmbeddingError(f"batch {batch_id} completed without an output file")
        by_id = self._download(output_file_id)

        vectors = []
        for custom_id in ids:
            if custom_id not in by_id:
                raise BatchEmbeddingError(f"batch {batch_id} is missing output for {custom_id}")
            vectors.append(by_id[custom_id])
        return np.asarray(vectors, dtype=np.float32)

    def _request(self, method: str, path: str, what: str, **kwargs) -> requests.Response:
        try:
            resp = self.session.request(
                method, f"{self.remote.base_url}{path}", timeout=self.remote.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise BatchEmbeddingError(f"{what} failed: {e}") from e
        try:
            raise_for_response(resp, what)
        except EmbeddingError as e:
            raise BatchEmbeddingError(str(e)) from e
        return resp

    def _upload(self, jsonl: str) -> str:
        resp = self._request(
            "POST",
            "/files",
            "batch file upload",
            data={"purpose": "batch"},
            files={"file": ("memory-embeddings.jsonl", jsonl.encode("utf-8"), "application/jsonl")},
        )
        file_id = resp.json().get("id")
        if not file_id:
            raise BatchEmbeddingError("batch file upload returned no file id")
        return file_id

    def _create(self, file_id: str) -> dict:
        resp = self._request(
            "POST",
            "/batches",
            "batch create",
            json={
                "input_file_id": file_id,
                "endpoint": BATCH_ENDPOINT,
                "completion_window": COMPLETION_WINDOW,
                "metadata": {"source": "mempack"},
            },
        )
        batch = resp.json()
        if not batch.get("id"):
            raise BatchEmbeddingError("batch create returned no batch id")
        return batch

    def _poll(self, batch_id: str) -> dict:
        deadline = self._clock() + self.timeout_seconds
        while True:
            batch = self._request("GET", f"/batches/{batch_id}", "batch status").json()
            status = batch.get("status", "")
            if status == "completed":
                return batch
            if status in TERMINAL_FAILURES:
                raise BatchEmbeddingError(f"batch {batch_id} {status}: {batch.get('errors') or ''}".strip())
            if self._clock() >= deadline:
                raise BatchEmbeddingError(
                    f"batch {batch_id} timed out after {self.timeout_seconds // 60} minutes (status {status or 'pending'})"
                )
            self._sleep(self.poll_interval)

    def _download(self, file_id: str) -> dict[str, list[float]]:
        resp = self._request("GET", f"/files/{file_id}/content", "batch output download")
        out: dict[str, list[float]] = {}
        for line in resp.text.splitlines():
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except ValueError as e:
                raise BatchEmbeddingError(f"malformed batch output line: {e}") from e
            if item.get("error"):
                raise BatchEmbeddingError(f"batch request {item.get('custom_id')} failed: {item['error']}")
            response = item.get("response") or {}
            if int(response.get("status_code", 200)) >= 400:
                raise BatchEmbeddingError(
                    f"batch request {item.get('custom_id')} failed: HTTP {response.get('status_code')}"
                )
            data = (response.get("body") or {}).get("data") or []
            if not data:
                raise BatchEmbeddingError(f"batch request {item.get('custom_id')} returned no embedding")
            out[item["custom_id"]] = data[0]["embedding"]
        return out
