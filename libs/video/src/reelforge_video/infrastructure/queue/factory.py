from __future__ import annotations

from reelforge_video.infrastructure.queue.base import RecordJobQueue
from reelforge_video.infrastructure.queue.fs_queue import FileSystemJobQueue
from reelforge_video.infrastructure.queue.redis_queue import RedisJobQueue
from reelforge_video.infrastructure.settings import Settings


def build_job_queue(settings: Settings) -> RecordJobQueue:
    if settings.queue_mode == "redis":
        return RedisJobQueue(
            settings.queue_redis_url,
            prefix=settings.queue_redis_prefix,
            max_attempts=settings.job_attempts,
            backoff_s=settings.job_backoff_s,
        )
    return FileSystemJobQueue(
        settings.queue_dir,
        max_attempts=settings.job_attempts,
        backoff_s=settings.job_backoff_s,
    )
