"""Single worker thread that serializes sync passes for one manager.

Every trigger (search, session warm-up, file watch, interval timer) goes
through the scheduler, so at most one sync runs at a time and bursts of
requests collapse into a single pass.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class SyncRequest:
    """Arguments for one (possibly coalesced) sync pass."""

    reason: str
    force: bool = False
    session_keys: tuple[str, ...] = ()
    futures: list[Future] = field(default_factory=list)

    def merge(self, reason: str, force: bool, session_keys: tuple[str, ...]) -> None:
        self.force = self.force or force
        for key in session_keys:
            if key not in self.session_keys:
                self.session_keys = (*self.session_keys, key)
        if reason not in self.reason.split(","):
            self.reason = f"{self.reason},{reason}"


class SyncScheduler:
    """Owns the sync timers and runs sync passes on one daemon thread.

    Args:
        run_sync: Called as ``run_sync(reason, force, session_keys)`` on the
            worker thread; its return value resolves the request futures.
        debounce_ms: Quiet period after ``notify_change`` before a sync
        clock: Injectable monotonic clock for tests
    """

    def __init__(
        self,
        run_sync: Callable[[str, bool, tuple[str, ...]], Any],
        debounce_ms: int = 1500,
        clock: Callable[[], float] = time.monotonic,
        name: str = "mempack-sync",
    ):
        self._run_sync = run_sync
        self.debounce = max(0, debounce_ms) / 1000
        self._clock = clock
        self._cond = threading.Condition()
        self._pending: Optional[SyncRequest] = None
        self._jobs: list[tuple[Callable[[], Any], Future]] = []
        self._debounce_deadline: Optional[float] = None
        self._interval: Optional[float] = None
        self._next_interval: Optional[float] = None
        self._running = False
        self._closed = False
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)
        self._thread.start()

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._running or self._pending is not None or bool(self._jobs)

    def request_sync(self, reason: str, force: bool = False, session_keys: tuple[str, ...] = ()) -> Future:
        """Queue a sync pass and return a future for its result.

        While a request is pending, later ones merge into it (``force`` and
        session keys are OR-ed together) and share its outcome.
        """
        future: Future = Future()
        with self._cond:
            if self._closed:
                future.cancel()
                return future
            if self._pending is None:
                self._pending = SyncRequest(reason, force, tuple(session_keys))
            else:
                self._pending.merge(reason, force, tuple(session_keys))
            self._pending.futures.append(future)
            self._cond.notify_all()
        return future

    def submit(self, fn: Callable[[], Any]) -> Future:
        """Run an arbitrary job on the worker thread, never alongside a sync."""
        future: Future = Future()
        with self._cond:
            if self._closed:
                future.cancel()
                return future
            self._jobs.append((fn, future))
            self._cond.notify_all()
        return future

    def notify_change(self) -> None:
        """Record a change; a sync fires once changes stop for the debounce period."""
        with self._cond:
            if self._closed:
                return
            self._debounce_deadline = self._clock() + self.debounce
            self._cond.notify_all()

    def start_interval(self, minutes: float) -> bool:
        """Start the periodic sync timer. Returns False if already started."""
        if minutes <= 0:
            return False
        with self._cond:
            if self._interval is not None or self._closed:
                return False
            self._interval = minutes * 60
            self._next_interval = self._clock() + self._interval
            self._cond.notify_all()
        logger.debug(f"Interval sync every {minutes} minutes")
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker and cancel anything still queued."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            pending = self._pending
            self._pending = None
            jobs = self._jobs
            self._jobs = []
            self._cond.notify_all()
        if pending is not None:
            for future in pending.futures:
                future.cancel()
        for _, future in jobs:
            future.cancel()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    # Worker

    def _next_task(self):
        """Block until there is work; return it, or None once closed."""
        with self._cond:
            while True:
                if self._closed:
                    return None
                if self._jobs:
                    return self._jobs.pop(0)
                now = self._clock()
                if self._debounce_deadline is not None and now >= self._debounce_deadline:
                    self._debounce_deadline = None
                    self._merge_pending("watch")
                if self._next_interval is not None and now >= self._next_interval:
                    self._next_interval = now + self._interval
                    self._merge_pending("interval")
                if self._pending is not None:
                    request, self._pending = self._pending, None
                    self._running = True
                    return request
                deadlines = [d for d in (self._debounce_deadline, self._next_interval) if d is not None]
                wait = max(0.0, min(deadlines) - now) if deadlines else None
                self._cond.wait(wait)

    def _merge_pending(self, reason: str) -> None:
        if self._pending is None:
            self._pending = SyncRequest(reason)
        else:
            self._pending.merge(reason, False, ())

    def _loop(self) -> None:
        while True:
            task = self._next_task()
            if task is None:
                return
            if isinstance(task, SyncRequest):
                self._run_request(task)
            else:
                fn, future = task
                self._run_job(fn, future)

    def _run_request(self, request: SyncRequest) -> None:
        futures = [f for f in request.futures if f.set_running_or_notify_cancel()]
        try:
            result = self._run_sync(request.reason, request.force, request.session_keys)
        except Exception as e:
            logger.warning(f"Memory sync ({request.reason}) failed: {e}")
            for future in futures:
                future.set_exception(e)
        else:
            for future in futures:
                future.set_result(result)
        finally:
            with self._cond:
                self._running = False
                self._cond.notify_all()

    def _run_job(self, fn: Callable[[], Any], future: Future) -> None:
        if not future.set_running_or_notify_cancel():
            return
        with self._cond:
            self._running = True
        try:
            result = fn()
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)
        finally:
            with self._cond:
                self._running = False
                self._cond.notify_all()
