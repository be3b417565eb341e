from __future__ import annotations

import signal
from pathlib import Path

from reelforge_contracts.video_job import JobRecord
from reelforge_video.application.use_cases import RenderSegmentedVideo
from reelforge_video.application.worker_pool import SlidingWindowRateLimiter, WorkerPool
from reelforge_video.infrastructure.logging import get_logger, maybe_init_tracing, setup_logging
from reelforge_video.infrastructure.media.ffmpeg import (
    FfmpegAudioTrimmer,
    FfmpegClipMuxer,
    FfmpegConcatenator,
    FfprobeProber,
)
from reelforge_video.infrastructure.metrics import maybe_start_server
from reelforge_video.infrastructure.queue.base import RecordJobQueue
from reelforge_video.infrastructure.queue.factory import build_job_queue
from reelforge_video.infrastructure.render.frame_renderer import PillowFrameRenderer
from reelforge_video.infrastructure.settings import Settings, load_env
from reelforge_video.infrastructure.storage.cache_store import JsonArtifactCache

log = get_logger("reelforge_worker")


def build_pipeline(settings: Settings, cache: JsonArtifactCache) -> RenderSegmentedVideo:
    return RenderSegmentedVideo(
        trimmer=FfmpegAudioTrimmer(settings.ffmpeg_bin, timeout_s=settings.ffmpeg_timeout_s),
        prober=FfprobeProber(settings.ffprobe_bin),
        renderer=PillowFrameRenderer(background=settings.frame_background, font_path=settings.frame_font_path),
        muxer=FfmpegClipMuxer(settings.ffmpeg_bin, timeout_s=settings.ffmpeg_timeout_s),
        concatenator=FfmpegConcatenator(settings.ffmpeg_bin, timeout_s=settings.ffmpeg_timeout_s),
        cache=cache,
        work_dir=settings.upload_dir,
        videos_dir=settings.videos_dir,
    )


def build_pool(settings: Settings, queue: RecordJobQueue, pipeline: RenderSegmentedVideo) -> WorkerPool:
    pool = WorkerPool(
        queue=queue,
        processor=pipeline,
        concurrency=settings.worker_concurrency,
        limiter=SlidingWindowRateLimiter(settings.rate_limit_max, settings.rate_limit_window_s),
        poll_interval_s=settings.poll_interval_s,
    )
    pool.on_completed(_log_completed)
    pool.on_failed(_log_failed)
    return pool


def _log_completed(job: JobRecord, result: str) -> None:
    log.info("job.completed id=%s url=%s", job.id, result)


def _log_failed(job: JobRecord, error: BaseException) -> None:
    log.error("job.failed id=%s attempts=%d error=%s", job.id, job.attempts_made, error)


def _discard_input(job: JobRecord) -> None:
    if not job.payload.audio_path:
        return
    try:
        Path(job.payload.audio_path).unlink(missing_ok=True)
    except OSError as exc:
        log.warning("worker.cleanup_failed id=%s path=%s error=%s", job.id, job.payload.audio_path, exc)


def main() -> None:
    load_env(Path.cwd() / ".env")
    settings = Settings.from_env()
    setup_logging(fmt=settings.log_format)
    maybe_init_tracing("reelforge-worker")
    if settings.metrics_enabled:
        maybe_start_server(settings.metrics_port)
    settings.ensure_dirs()

    cache = JsonArtifactCache(settings.cache_file, settings.public_dir)
    cache.load()
    queue = build_job_queue(settings)
    queue.recover_active(on_exhausted=_discard_input)
    pool = build_pool(settings, queue, build_pipeline(settings, cache))

    def _shutdown(signum, _frame) -> None:
        log.info("worker.signal signum=%s; finishing active jobs", signum)
        pool.stop(wait=False)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    log.info(
        "worker.start queue_mode=%s concurrency=%d rate_limit=%d/%.0fs",
        settings.queue_mode,
        settings.worker_concurrency,
        settings.rate_limit_max,
        settings.rate_limit_window_s,
    )
    try:
        pool.run_forever()
    finally:
        pool.stop(wait=True)


if __name__ == "__main__":
    main()
