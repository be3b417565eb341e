from __future__ import annotations

import threading
import time

from reelforge_contracts.video_job import BaseText, JobPayload, JobState, Segment
from reelforge_video.application.worker_pool import SlidingWindowRateLimiter, WorkerPool
from reelforge_video.infrastructure.queue.fs_queue import FileSystemJobQueue


def make_payload(fingerprint: str) -> JobPayload:
    return JobPayload(
        audio_path="/tmp/audio.mp3",
        fingerprint=fingerprint,
        base_text=BaseText(series_title="S", main_title="M", speaker="P"),
        segments=[Segment(start_time=0, end_time=1)],
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_sliding_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_events=2, window_s=30.0, clock=clock)

    limiter.record()
    clock.now = 10.0
    limiter.record()
    assert limiter.available() is False
    assert limiter.wait_time() == 20.0

    clock.now = 30.0
    assert limiter.available() is True
    assert limiter.wait_time() == 0.0


def test_pool_never_exceeds_concurrency(tmp_path):
    queue = FileSystemJobQueue(tmp_path)
    for i in range(8):
        queue.enqueue(make_payload(str(i)), idempotency_key=str(i))

    active = 0
    peak = 0
    lock = threading.Lock()

    def processor(job, report):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        report(100)
        with lock:
            active -= 1
        return f"/videos/video-{job.fingerprint}.mp4"

    completed = []
    pool = WorkerPool(queue=queue, processor=processor, concurrency=3)
    pool.on_completed(lambda job, result: completed.append(result))
    try:
        pool.drain(timeout_s=10)
    finally:
        pool.stop()

    assert peak <= 3
    assert len(completed) == 8
    assert queue.counts() == {"completed": 8}


def test_failing_job_is_attempted_three_times_then_failed(tmp_path):
    queue = FileSystemJobQueue(tmp_path, max_attempts=3, backoff_s=0.01)
    job = queue.enqueue(make_payload("x"), idempotency_key="x")
    attempts: list[int] = []
    failed = []
    completed = []

    def processor(record, report):
        attempts.append(record.attempts_made)
        raise RuntimeError("render failed")

    pool = WorkerPool(queue=queue, processor=processor, concurrency=2, poll_interval_s=0.01)
    pool.on_failed(lambda record, exc: failed.append((record.id, str(exc))))
    pool.on_completed(lambda record, result: completed.append(record.id))
    try:
        pool.drain(timeout_s=10)
    finally:
        pool.stop()

    assert attempts == [1, 2, 3]
    assert failed == [(job.id, "render failed")]
    assert completed == []
    stored = queue.get_job(job.id)
    assert stored.state == JobState.FAILED
    assert stored.failed_reason == "render failed"


def test_rate_limiter_caps_starts(tmp_path):
    queue = FileSystemJobQueue(tmp_path)
    for i in range(5):
        queue.enqueue(make_payload(str(i)), idempotency_key=str(i))
    limiter = SlidingWindowRateLimiter(max_events=2, window_s=60.0)
    pool = WorkerPool(queue=queue, processor=lambda job, report: "/videos/x.mp4", concurrency=5, limiter=limiter)
    try:
        assert pool.dispatch_available() == 2
        assert pool.dispatch_available() == 0
    finally:
        pool.stop()
    assert queue.depth() == 3


def test_listener_errors_do_not_break_the_pool(tmp_path):
    queue = FileSystemJobQueue(tmp_path)
    queue.enqueue(make_payload("a"), idempotency_key="a")
    queue.enqueue(make_payload("b"), idempotency_key="b")
    seen = []

    def bad_listener(job, result):
        raise ValueError("listener bug")

    pool = WorkerPool(queue=queue, processor=lambda job, report: "/videos/x.mp4", concurrency=1)
    pool.on_completed(bad_listener)
    pool.on_completed(lambda job, result: seen.append(job.id))
    try:
        pool.drain(timeout_s=10)
    finally:
        pool.stop()
    assert len(seen) == 2


def test_claim_is_handed_back_when_executor_already_shut_down(tmp_path):
    queue = FileSystemJobQueue(tmp_path)
    job = queue.enqueue(make_payload("a"), idempotency_key="a")
    limiter = SlidingWindowRateLimiter(max_events=1, window_s=60.0)
    pool = WorkerPool(queue=queue, processor=lambda record, report: "/videos/x.mp4", concurrency=1, limiter=limiter)
    pool._executor.shutdown(wait=True)

    assert pool.dispatch_available() == 0

    stored = queue.get_job(job.id)
    assert stored.state == JobState.WAITING
    assert stored.attempts_made == 0
    assert queue.depth() == 1
    assert limiter.available() is True
    assert pool._slots.acquire(blocking=False) is True
