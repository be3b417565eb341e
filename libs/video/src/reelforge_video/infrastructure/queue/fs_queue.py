from __future__ import annotations

import os
import re
import secrets
import time
from pathlib import Path

from pydantic import ValidationError

from reelforge_contracts.video_job import JobRecord
from reelforge_video.infrastructure.logging import get_logger
from reelforge_video.infrastructure.queue.base import Clock, RecordJobQueue
from reelforge_video.infrastructure.storage.locks import atomic_write_text

log = get_logger(__name__)

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class FileSystemJobQueue(RecordJobQueue):
    """Durable queue on a local directory.

    Layout under ``base_dir``::

        jobs/<id>.json                 job record
        waiting/<ready_ns>-<id>        job is waiting, ready at ready_ns
        active/<id>                    job was claimed by a worker

    Claiming renames a waiting marker into ``active/``; rename is atomic, so
    two workers (threads or processes) never claim the same job.
    """

    def __init__(
        self,
        base_dir: Path,
        *,
        max_attempts: int = 3,
        backoff_s: float = 1.0,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(max_attempts=max_attempts, backoff_s=backoff_s, clock=clock)
        self.base_dir = Path(base_dir)
        self.jobs_dir = self.base_dir / "jobs"
        self.waiting_dir = self.base_dir / "waiting"
        self.active_dir = self.base_dir / "active"
        for path in [self.jobs_dir, self.waiting_dir, self.active_dir]:
            path.mkdir(parents=True, exist_ok=True)

    def _new_id(self) -> str:
        return f"{time.time_ns():016x}-{secrets.token_hex(3)}"

    def _record_path(self, job_id: str) -> Path | None:
        if not _JOB_ID_RE.match(job_id):
            return None
        return self.jobs_dir / f"{job_id}.json"

    def _load(self, job_id: str) -> JobRecord | None:
        path = self._record_path(job_id)
        if path is None:
            return None
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return JobRecord.model_validate_json(raw)
        except ValidationError as exc:
            log.error("queue.record_unreadable id=%s error=%s", job_id, exc)
            return None

    def _save(self, record: JobRecord) -> None:
        path = self._record_path(record.id)
        if path is None:
            raise ValueError(f"Invalid job id {record.id!r}")
        atomic_write_text(path, record.model_dump_json(indent=2))

    def _schedule(self, job_id: str, ready_at: float) -> None:
        ready_ns = int(ready_at * 1_000_000_000)
        (self.waiting_dir / f"{ready_ns:020d}-{job_id}").write_text(job_id, encoding="utf-8")

    def _waiting_markers(self) -> list[Path]:
        return sorted((p for p in self.waiting_dir.iterdir() if not p.name.startswith(".")), key=lambda p: p.name)

    def _pop_ready(self, now: float) -> str | None:
        now_ns = int(now * 1_000_000_000)
        for marker in self._waiting_markers():
            ready_part, _, job_id = marker.name.partition("-")
            try:
                ready_ns = int(ready_part)
            except ValueError:
                log.warning("queue.bad_marker name=%s", marker.name)
                continue
            if ready_ns > now_ns:
                return None
            try:
                os.rename(marker, self.active_dir / job_id)
            except FileNotFoundError:
                # another worker got there first
                continue
            return job_id
        return None

    def _mark_active(self, job_id: str) -> None:
        # claiming already moved the marker into active/
        return None

    def _release(self, job_id: str) -> None:
        (self.active_dir / job_id).unlink(missing_ok=True)

    def _active_ids(self) -> list[str]:
        return sorted(p.name for p in self.active_dir.iterdir() if not p.name.startswith("."))

    def _all_records(self) -> list[JobRecord]:
        records: list[JobRecord] = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            record = self._load(path.stem)
            if record is not None:
                records.append(record)
        return records

    def depth(self) -> int:
        return len(self._waiting_markers())
