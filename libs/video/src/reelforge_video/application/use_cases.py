from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from reelforge_contracts.errors import DataIntegrityError, MediaToolError, PipelineError, ReelforgeError
from reelforge_contracts.video_job import JobPayload, JobRecord, SubmitOutcome, VideoJobRequest
from reelforge_video.application.fingerprint import fingerprint_file
from reelforge_video.application.ports import (
    ArtifactCache,
    AudioTrimmer,
    ClipConcatenator,
    ClipMuxer,
    FrameRenderer,
    JobQueue,
    MediaProber,
)
from reelforge_video.domain.models import FrameText, SegmentWorkspace
from reelforge_video.infrastructure.logging import get_logger
from reelforge_video.infrastructure.metrics import cache_lookup, observe_stage

log = get_logger(__name__)

ProgressReporter = Callable[[float], None]

# Segments may end slightly past the probed source duration (container rounding).
RANGE_TOLERANCE_S = 0.25


def video_filename(fingerprint: str) -> str:
    return f"video-{fingerprint}.mp4"


@contextmanager
def _timed(stage: str) -> Iterator[None]:
    t0 = time.monotonic()
    try:
        yield
    finally:
        observe_stage(stage, time.monotonic() - t0)


def _discard(path: Path, *, context: str) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        log.warning("%s.cleanup_failed path=%s error=%s", context, path, exc)


class RenderSegmentedVideo:
    """Runs one attempt of a job: per-segment trim/render/mux, then concat.

    Every transient file registered during the attempt is removed on the way
    out, whatever the outcome. The input audio is removed too once no further
    attempt can need it (success, or the job's last attempt).
    """

    def __init__(
        self,
        *,
        trimmer: AudioTrimmer,
        prober: MediaProber,
        renderer: FrameRenderer,
        muxer: ClipMuxer,
        concatenator: ClipConcatenator,
        cache: ArtifactCache,
        work_dir: Path,
        videos_dir: Path,
        public_prefix: str = "/videos",
    ) -> None:
        self.trimmer = trimmer
        self.prober = prober
        self.renderer = renderer
        self.muxer = muxer
        self.concatenator = concatenator
        self.cache = cache
        self.work_dir = Path(work_dir)
        self.videos_dir = Path(videos_dir)
        self.public_prefix = public_prefix.rstrip("/")

    def __call__(self, job: JobRecord, report_progress: ProgressReporter) -> str:
        return self.run(job, report_progress)

    def run(self, job: JobRecord, report_progress: ProgressReporter) -> str:
        payload = job.payload
        audio_path = Path(payload.audio_path) if payload.audio_path else None
        fingerprint = payload.fingerprint
        segments = payload.segments
        base = payload.base_text

        pending: list[Path] = []
        succeeded = False
        try:
            self._validate(job.id, payload)
            log.info("pipeline.start id=%s fingerprint=%s segments=%d", job.id, fingerprint, len(segments))
            self.work_dir.mkdir(parents=True, exist_ok=True)
            self.videos_dir.mkdir(parents=True, exist_ok=True)
            with _timed("probe_source"):
                source_duration = self.prober.duration(audio_path)

            clips: list[Path] = []
            total = len(segments)
            for idx, seg in enumerate(segments):
                report_progress((idx / total) * 90)
                log.info("pipeline.segment id=%s segment=%d/%d", job.id, idx + 1, total)
                if seg.start_time >= source_duration or seg.end_time > source_duration + RANGE_TOLERANCE_S:
                    raise MediaToolError(
                        f"Segment {idx + 1} range [{seg.start_time}, {seg.end_time}) exceeds "
                        f"source duration {source_duration:.3f}s"
                    )

                ws = SegmentWorkspace.allocate(self.work_dir, f"{uuid.uuid4().hex}-seg{idx}")
                pending.extend(ws.paths())

                with _timed("trim"):
                    self.trimmer.trim(source=audio_path, start=seg.start_time, end=seg.end_time, out_path=ws.trimmed_audio)
                with _timed("render"):
                    self.renderer.render(
                        text=FrameText(
                            series_title=base.series_title,
                            main_title=base.main_title,
                            speaker=base.speaker,
                            extra_text=seg.extra_text,
                        ),
                        out_path=ws.frame_image,
                    )
                with _timed("mux"):
                    # the trimmed file's real length, not the requested range
                    duration = self.prober.duration(ws.trimmed_audio)
                    self.muxer.mux(image=ws.frame_image, audio=ws.trimmed_audio, duration=duration, out_path=ws.clip)
                clips.append(ws.clip)

            report_progress(95)
            final_name = video_filename(fingerprint)
            final_path = self.videos_dir / final_name
            # published only once the cache points at it
            pending.append(final_path)
            with _timed("concat"):
                self.concatenator.concat(clips=clips, out_path=final_path)

            video_url = f"{self.public_prefix}/{final_name}"
            self.cache.record(fingerprint, video_url)
            pending.remove(final_path)
            report_progress(100)
            succeeded = True
            log.info("pipeline.done id=%s url=%s", job.id, video_url)
            return video_url
        except (ReelforgeError, OSError) as exc:
            log.error("pipeline.failed id=%s error=%s", job.id, exc)
            raise
        except Exception as exc:
            log.exception("pipeline.failed id=%s", job.id)
            raise PipelineError(str(exc)) from exc
        finally:
            if audio_path is not None and (succeeded or job.attempts_made >= job.max_attempts):
                pending.append(audio_path)
            self._cleanup(job.id, pending)

    def _validate(self, job_id: str, payload: JobPayload) -> None:
        missing = [name for name in ("audio_path", "fingerprint", "base_text") if not getattr(payload, name)]
        if not payload.segments:
            missing.append("segments")
        if missing:
            raise DataIntegrityError(f"Job {job_id} data is missing required fields: {', '.join(missing)}")

    def _cleanup(self, job_id: str, paths: list[Path]) -> None:
        log.info("pipeline.cleanup id=%s files=%d", job_id, len(paths))
        for path in paths:
            _discard(path, context="pipeline")


class SubmitVideoJob:
    """Producer side: fingerprint, short-circuit on a live cache hit, else enqueue.

    The producer owns ``audio_path`` until a job is accepted; after that the
    worker disposes of it.
    """

    def __init__(self, *, cache: ArtifactCache, queue: JobQueue) -> None:
        self.cache = cache
        self.queue = queue

    def run(self, *, request: VideoJobRequest, audio_path: Path) -> SubmitOutcome:
        try:
            base = request.base_text()
            fingerprint = fingerprint_file(base, request.segments, audio_path)

            cached_url = self.cache.lookup(fingerprint)
            if cached_url is not None:
                if self.cache.verify(cached_url):
                    cache_lookup("hit")
                    log.info("producer.cache_hit fingerprint=%s url=%s", fingerprint, cached_url)
                    _discard(audio_path, context="producer")
                    return SubmitOutcome(cached=True, video_url=cached_url)
                log.warning("producer.cache_stale fingerprint=%s url=%s; regenerating", fingerprint, cached_url)
                self.cache.evict(fingerprint)
                cache_lookup("stale")
            else:
                cache_lookup("miss")

            payload = JobPayload(
                audio_path=str(Path(audio_path).resolve()),
                fingerprint=fingerprint,
                base_text=base,
                segments=request.segments,
            )
            job = self.queue.enqueue(payload, idempotency_key=fingerprint)
            log.info("producer.queued id=%s fingerprint=%s", job.id, fingerprint)
            return SubmitOutcome(cached=False, job_id=job.id)
        except Exception:
            _discard(audio_path, context="producer")
            raise
