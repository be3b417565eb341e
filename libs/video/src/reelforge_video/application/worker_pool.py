from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from reelforge_contracts.video_job import JobRecord, JobState
from reelforge_video.application.ports import JobQueue
from reelforge_video.infrastructure.logging import get_logger, job_context
from reelforge_video.infrastructure.metrics import (
    job_failed,
    job_retried,
    job_started,
    job_succeeded,
    observe_stage,
    set_queue_depth,
)

log = get_logger(__name__)

JobProcessor = Callable[[JobRecord, Callable[[float], None]], str]
CompletedListener = Callable[[JobRecord, str], None]
FailedListener = Callable[[JobRecord, BaseException], None]


class SlidingWindowRateLimiter:
    """At most ``max_events`` starts within any ``window_s`` seconds."""

    def __init__(self, max_events: int = 100, window_s: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_events = max(1, int(max_events))
        self.window_s = float(window_s)
        self.clock = clock
        self._events: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.window_s:
            self._events.popleft()

    def available(self) -> bool:
        with self._lock:
            self._prune(self.clock())
            return len(self._events) < self.max_events

    def record(self) -> None:
        with self._lock:
            now = self.clock()
            self._prune(now)
            self._events.append(now)

    def wait_time(self) -> float:
        with self._lock:
            now = self.clock()
            self._prune(now)
            if len(self._events) < self.max_events:
                return 0.0
            return max(0.0, self._events[0] + self.window_s - now)


class WorkerPool:
    """Pulls jobs from a queue and runs them on a fixed number of threads.

    A job is claimed only when a thread is free and the rate limiter allows
    another start, so no more than ``concurrency`` jobs are ever active in
    this pool. Each claimed job ends in exactly one queue transition
    (complete or fail) and terminal outcomes are announced once to the
    registered listeners.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        processor: JobProcessor,
        concurrency: int = 5,
        limiter: SlidingWindowRateLimiter | None = None,
        poll_interval_s: float = 1.0,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.concurrency = max(1, int(concurrency))
        self.limiter = limiter
        self.poll_interval_s = poll_interval_s
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="reelforge-worker")
        self._slots = threading.BoundedSemaphore(self.concurrency)
        self._stop = threading.Event()
        self._inflight: set[Future] = set()
        self._inflight_lock = threading.Lock()
        self._completed_listeners: list[CompletedListener] = []
        self._failed_listeners: list[FailedListener] = []

    def on_completed(self, listener: CompletedListener) -> None:
        self._completed_listeners.append(listener)

    def on_failed(self, listener: FailedListener) -> None:
        self._failed_listeners.append(listener)

    @property
    def inflight(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def dispatch_available(self) -> int:
        """Claim and start as many jobs as free threads and the limiter allow."""
        started = 0
        while not self._stop.is_set():
            if not self._slots.acquire(blocking=False):
                break
            if self.limiter is not None and not self.limiter.available():
                self._slots.release()
                break
            job = self.queue.claim_next()
            if job is None:
                self._slots.release()
                break
            try:
                future = self._executor.submit(self._run_job, job)
            except RuntimeError:
                # executor shut down between claim and submit
                self._slots.release()
                self.queue.requeue(job.id)
                break
            if self.limiter is not None:
                self.limiter.record()
            with self._inflight_lock:
                self._inflight.add(future)
            future.add_done_callback(self._job_done)
            started += 1
        return started

    def _job_done(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)
        self._slots.release()
        exc = future.exception()
        if exc is not None:
            log.error("worker.job_crashed error=%s", exc, exc_info=exc)

    def _run_job(self, job: JobRecord) -> None:
        with job_context(job.id):
            job_started()
            started = time.monotonic()
            log.info("worker.job.start id=%s attempt=%d/%d", job.id, job.attempts_made, job.max_attempts)
            try:
                result = self.processor(job, lambda percent: self.queue.update_progress(job.id, percent))
            except Exception as exc:
                observe_stage("total", time.monotonic() - started)
                reason = str(exc) or exc.__class__.__name__
                record = self.queue.fail(job.id, reason)
                if record.state == JobState.FAILED:
                    job_failed()
                    log.error("worker.job.failed id=%s attempts=%d error=%s", job.id, record.attempts_made, reason)
                    self._notify(self._failed_listeners, record, exc)
                else:
                    job_retried()
                return
            observe_stage("total", time.monotonic() - started)
            record = self.queue.complete(job.id, result)
            job_succeeded()
            log.info("worker.job.completed id=%s result=%s", job.id, result)
            self._notify(self._completed_listeners, record, result)

    def _notify(self, listeners: list, record: JobRecord, value: object) -> None:
        for listener in listeners:
            try:
                listener(record, value)
            except Exception:
                log.exception("worker.listener_failed id=%s", record.id)

    def drain(self, *, timeout_s: float = 30.0, idle_sleep_s: float = 0.01) -> None:
        """Run until the queue is empty and nothing is in flight."""
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            self.dispatch_available()
            if self.inflight == 0 and self.queue.depth() == 0:
                return
            time.sleep(idle_sleep_s)
        raise TimeoutError(f"Queue not drained after {timeout_s}s")

    def run_forever(self) -> None:
        log.info("worker.pool.start concurrency=%d", self.concurrency)
        while not self._stop.is_set():
            started = self.dispatch_available()
            set_queue_depth(self.queue.depth())
            if started:
                continue
            wait_s = self.poll_interval_s
            if self.limiter is not None:
                wait_s = max(wait_s, min(self.limiter.wait_time(), self.poll_interval_s * 10))
            self._stop.wait(wait_s)

    def stop(self, *, wait: bool = True) -> None:
        self._stop.set()
        self._executor.shutdown(wait=wait)
        log.info("worker.pool.stopped")
