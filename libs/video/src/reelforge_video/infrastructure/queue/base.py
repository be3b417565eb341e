from __future__ import annotations

import time
from typing import Callable

from reelforge_contracts.errors import JobStateError
from reelforge_contracts.video_job import JobPayload, JobRecord, JobState
from reelforge_video.application.ports import JobQueue
from reelforge_video.infrastructure.logging import get_logger

log = get_logger(__name__)

Clock = Callable[[], float]


def backoff_delay(base_s: float, attempts_made: int) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... after attempt 1, 2, 3, ..."""
    return base_s * (2 ** max(0, attempts_made - 1))


class RecordJobQueue(JobQueue):
    """Job state machine shared by the storage backends.

    Backends persist records and keep an ordered set of waiting job ids keyed
    by the time each becomes ready. Transitions:

        waiting -> active -> completed
        waiting -> active -> waiting (backoff) -> active -> ... -> failed
    """

    def __init__(self, *, max_attempts: int = 3, backoff_s: float = 1.0, clock: Clock = time.time) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_s = float(backoff_s)
        self.clock = clock

    # storage primitives
    def _new_id(self) -> str:
        raise NotImplementedError

    def _load(self, job_id: str) -> JobRecord | None:
        raise NotImplementedError

    def _save(self, record: JobRecord) -> None:
        raise NotImplementedError

    def _schedule(self, job_id: str, ready_at: float) -> None:
        raise NotImplementedError

    def _pop_ready(self, now: float) -> str | None:
        """Atomically remove and return the earliest job id ready at ``now``."""
        raise NotImplementedError

    def _mark_active(self, job_id: str) -> None:
        raise NotImplementedError

    def _release(self, job_id: str) -> None:
        raise NotImplementedError

    def _all_records(self) -> list[JobRecord]:
        raise NotImplementedError

    def depth(self) -> int:
        raise NotImplementedError

    def _active_ids(self) -> list[str]:
        raise NotImplementedError

    # operations
    def enqueue(self, payload: JobPayload, *, idempotency_key: str) -> JobRecord:
        now = self.clock()
        record = JobRecord(
            id=self._new_id(),
            fingerprint=idempotency_key,
            payload=payload,
            state=JobState.WAITING,
            max_attempts=self.max_attempts,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        self._save(record)
        self._schedule(record.id, now)
        log.info("queue.enqueued id=%s fingerprint=%s", record.id, idempotency_key)
        return record

    def get_job(self, job_id: str) -> JobRecord | None:
        return self._load(job_id)

    def claim_next(self) -> JobRecord | None:
        while True:
            now = self.clock()
            job_id = self._pop_ready(now)
            if job_id is None:
                return None
            record = self._load(job_id)
            if record is None or record.is_terminal:
                log.warning("queue.orphan_dropped id=%s", job_id)
                self._release(job_id)
                continue
            self._mark_active(job_id)
            record.state = JobState.ACTIVE
            record.attempts_made += 1
            record.updated_at = now
            self._save(record)
            log.info("queue.claimed id=%s attempt=%d/%d", job_id, record.attempts_made, record.max_attempts)
            return record

    def update_progress(self, job_id: str, percent: float) -> JobRecord:
        record = self._require(job_id)
        if record.state != JobState.ACTIVE:
            raise JobStateError(f"Job {job_id} is {record.state.value}; progress is only reported while active")
        clamped = min(100.0, max(0.0, float(percent)))
        if clamped > record.progress:
            record.progress = clamped
            record.updated_at = self.clock()
            self._save(record)
        return record

    def complete(self, job_id: str, result: str) -> JobRecord:
        record = self._require_live(job_id)
        now = self.clock()
        record.state = JobState.COMPLETED
        record.result = result
        record.failed_reason = None
        record.updated_at = now
        record.finished_at = now
        self._save(record)
        self._release(job_id)
        return record

    def fail(self, job_id: str, reason: str) -> JobRecord:
        record = self._require_live(job_id)
        now = self.clock()
        record.failed_reason = reason
        record.updated_at = now
        if record.attempts_made < record.max_attempts:
            delay = backoff_delay(self.backoff_s, record.attempts_made)
            record.state = JobState.WAITING
            record.available_at = now + delay
            self._save(record)
            self._release(job_id)
            self._schedule(job_id, record.available_at)
            log.warning(
                "queue.retry_scheduled id=%s attempt=%d/%d delay_s=%.1f reason=%s",
                job_id,
                record.attempts_made,
                record.max_attempts,
                delay,
                reason,
            )
            return record
        record.state = JobState.FAILED
        record.finished_at = now
        self._save(record)
        self._release(job_id)
        return record

    def requeue(self, job_id: str) -> JobRecord:
        """Hand a claimed job back without spending the attempt it was claimed with."""
        record = self._require_live(job_id)
        if record.state != JobState.ACTIVE:
            raise JobStateError(f"Job {job_id} is {record.state.value}; only active jobs can be requeued")
        now = self.clock()
        record.state = JobState.WAITING
        record.attempts_made = max(0, record.attempts_made - 1)
        record.available_at = now
        record.updated_at = now
        self._save(record)
        self._release(job_id)
        self._schedule(job_id, now)
        log.info("queue.requeued id=%s", job_id)
        return record

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._all_records():
            counts[record.state.value] = counts.get(record.state.value, 0) + 1
        return counts

    def recover_active(self, on_exhausted: Callable[[JobRecord], None] | None = None) -> list[str]:
        """Put jobs left active by a dead worker back in line.

        A job that was already on its last attempt is failed instead and
        handed to ``on_exhausted``. Only safe while no other worker process
        is consuming this queue.
        """
        recovered: list[str] = []
        now = self.clock()
        for job_id in self._active_ids():
            record = self._load(job_id)
            self._release(job_id)
            if record is None or record.is_terminal:
                continue
            record.updated_at = now
            if record.attempts_made >= record.max_attempts:
                record.state = JobState.FAILED
                record.failed_reason = "Worker stopped during the final attempt"
                record.finished_at = now
                self._save(record)
                log.error("queue.recovered_exhausted id=%s attempts=%d", job_id, record.attempts_made)
                if on_exhausted is not None:
                    on_exhausted(record)
                continue
            record.state = JobState.WAITING
            record.available_at = now
            self._save(record)
            self._schedule(job_id, now)
            recovered.append(job_id)
        if recovered:
            log.warning("queue.recovered_active ids=%s", ",".join(recovered))
        return recovered

    def _require(self, job_id: str) -> JobRecord:
        record = self._load(job_id)
        if record is None:
            raise JobStateError(f"Unknown job {job_id}")
        return record

    def _require_live(self, job_id: str) -> JobRecord:
        record = self._require(job_id)
        if record.is_terminal:
            raise JobStateError(f"Job {job_id} is already {record.state.value}")
        return record
