from __future__ import annotations

import time
from typing import Any

import redis
from pydantic import ValidationError

from reelforge_contracts.video_job import JobRecord
from reelforge_video.infrastructure.logging import get_logger
from reelforge_video.infrastructure.queue.base import Clock, RecordJobQueue

log = get_logger(__name__)


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class RedisJobQueue(RecordJobQueue):
    """Queue kept in Redis so producer and worker hosts can share it.

    Keys under ``prefix``: ``:id`` (INCR counter), ``:job:<id>`` (record JSON),
    ``:wait`` (sorted set of ids scored by ready time), ``:active`` (set).
    """

    _CLAIM_TRIES = 8

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "reelforge:video-processing",
        client: Any | None = None,
        max_attempts: int = 3,
        backoff_s: float = 1.0,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(max_attempts=max_attempts, backoff_s=backoff_s, clock=clock)
        if client is None:
            client = redis.Redis.from_url(redis_url)
        self.client = client
        self.prefix = prefix
        self.id_key = f"{prefix}:id"
        self.wait_key = f"{prefix}:wait"
        self.active_key = f"{prefix}:active"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _new_id(self) -> str:
        return str(self.client.incr(self.id_key))

    def _load(self, job_id: str) -> JobRecord | None:
        raw = self.client.get(self._job_key(job_id))
        if raw is None:
            return None
        try:
            return JobRecord.model_validate_json(_text(raw))
        except ValidationError as exc:
            log.error("queue.record_unreadable id=%s error=%s", job_id, exc)
            return None

    def _save(self, record: JobRecord) -> None:
        self.client.set(self._job_key(record.id), record.model_dump_json())

    def _schedule(self, job_id: str, ready_at: float) -> None:
        self.client.zadd(self.wait_key, {job_id: ready_at})

    def _pop_ready(self, now: float) -> str | None:
        for _ in range(self._CLAIM_TRIES):
            items = self.client.zrangebyscore(self.wait_key, "-inf", now, start=0, num=1)
            if not items:
                return None
            job_id = _text(items[0])
            # ZREM returns 1 only for the worker that actually removed it
            if self.client.zrem(self.wait_key, job_id):
                return job_id
        return None

    def _mark_active(self, job_id: str) -> None:
        self.client.sadd(self.active_key, job_id)

    def _release(self, job_id: str) -> None:
        self.client.srem(self.active_key, job_id)

    def _active_ids(self) -> list[str]:
        return sorted(_text(v) for v in self.client.smembers(self.active_key))

    def _all_records(self) -> list[JobRecord]:
        records: list[JobRecord] = []
        prefix = self._job_key("")
        for key in self.client.scan_iter(match=f"{prefix}*"):
            record = self._load(_text(key)[len(prefix):])
            if record is not None:
                records.append(record)
        return records

    def depth(self) -> int:
        return int(self.client.zcard(self.wait_key))
