"""Tests for the sync scheduler: coalescing, debounce, jobs and shutdown."""

import threading
import time

import pytest

from mempack.scheduler import SyncRequest, SyncScheduler


class Recorder:
    """run_sync stand-in that records calls and can hold the worker."""

    def __init__(self):
        self.calls: list[tuple[str, bool, tuple[str, ...]]] = []
        self.started = threading.Event()
        self.release = threading.Event()
        self.release.set()
        self.fail_with: Exception | None = None

    def __call__(self, reason, force, session_keys):
        self.calls.append((reason, force, session_keys))
        self.started.set()
        self.release.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        return len(self.calls)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_scheduler(recorder):
    schedulers = []

    def _make(**kwargs):
        scheduler = SyncScheduler(recorder, **kwargs)
        schedulers.append(scheduler)
        return scheduler

    yield _make
    recorder.release.set()
    for scheduler in schedulers:
        scheduler.close()


def test_request_merge():
    request = SyncRequest("search")
    request.merge("session-start", False, ("a",))
    request.merge("search", True, ("a", "b"))
    assert request.reason == "search,session-start"
    assert request.force is True
    assert request.session_keys == ("a", "b")


def test_request_sync_returns_result(make_scheduler, recorder):
    scheduler = make_scheduler()
    assert scheduler.request_sync("manual").result(2) == 1
    assert recorder.calls == [("manual", False, ())]


def test_pending_requests_coalesce(make_scheduler, recorder):
    scheduler = make_scheduler()
    recorder.release.clear()
    first = scheduler.request_sync("first")
    assert recorder.started.wait(2)
    assert scheduler.busy

    queued = [
        scheduler.request_sync("search"),
        scheduler.request_sync("session-start", session_keys=("room",)),
        scheduler.request_sync("search", force=True),
    ]
    recorder.release.set()

    assert first.result(2) == 1
    assert [f.result(2) for f in queued] == [2, 2, 2]
    assert recorder.calls[1] == ("search,session-start", True, ("room",))
    assert len(recorder.calls) == 2


def test_failure_propagates(make_scheduler, recorder):
    scheduler = make_scheduler()
    recorder.fail_with = RuntimeError("disk full")
    with pytest.raises(RuntimeError, match="disk full"):
        scheduler.request_sync("manual").result(2)

    recorder.fail_with = None
    assert scheduler.request_sync("manual").result(2) == 2


def test_submit_runs_on_worker(make_scheduler):
    scheduler = make_scheduler()
    names = []
    future = scheduler.submit(lambda: names.append(threading.current_thread().name) or 42)
    assert future.result(2) == 42
    assert names == ["mempack-sync"]

    def boom():
        raise ValueError("bad job")

    with pytest.raises(ValueError, match="bad job"):
        scheduler.submit(boom).result(2)


def test_notify_change_debounces(make_scheduler, recorder):
    scheduler = make_scheduler(debounce_ms=100)
    for _ in range(5):
        scheduler.notify_change()
    assert recorder.started.wait(2)
    time.sleep(0.3)
    assert recorder.calls == [("watch", False, ())]


def test_interval_merges_into_next_pass(make_scheduler, recorder):
    now = [0.0]
    scheduler = make_scheduler(clock=lambda: now[0])
    assert scheduler.start_interval(0) is False
    assert scheduler.start_interval(1) is True
    assert scheduler.start_interval(1) is False

    now[0] = 61.0
    scheduler.request_sync("manual").result(2)
    reasons = ",".join(reason for reason, _, _ in recorder.calls).split(",")
    assert "interval" in reasons
    assert "manual" in reasons


def test_close_cancels_queued_work(make_scheduler, recorder):
    scheduler = make_scheduler()
    recorder.release.clear()
    running = scheduler.request_sync("first")
    assert recorder.started.wait(2)
    queued = scheduler.request_sync("second")
    job = scheduler.submit(lambda: 1)

    scheduler.close(timeout=0.1)
    assert queued.cancelled()
    assert job.cancelled()

    recorder.release.set()
    assert running.result(2) == 1
    assert scheduler.request_sync("late").cancelled()
    assert scheduler.submit(lambda: 1).cancelled()
