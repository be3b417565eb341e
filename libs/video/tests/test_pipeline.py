from __future__ import annotations

from pathlib import Path

import pytest

from reelforge_contracts.errors import DataIntegrityError, MediaToolError, PipelineError
from reelforge_contracts.video_job import BaseText, JobPayload, JobRecord, JobState, Segment
from reelforge_video.application.use_cases import RenderSegmentedVideo
from reelforge_video.application.worker_pool import WorkerPool
from reelforge_video.infrastructure.queue.fs_queue import FileSystemJobQueue


class DummyTrimmer:
    def __init__(self) -> None:
        self.calls: list[tuple[float, float]] = []

    def trim(self, *, source, start, end, out_path):
        self.calls.append((start, end))
        Path(out_path).write_text(f"{start}-{end}", encoding="utf-8")


class DummyProber:
    def __init__(self, source_duration: float = 30.0) -> None:
        self.source_duration = source_duration

    def duration(self, path):
        text = Path(path).read_text(encoding="utf-8", errors="ignore")
        if text.startswith("source"):
            return self.source_duration
        start, end = (float(x) for x in text.split("-"))
        return end - start


class DummyRenderer:
    def __init__(self) -> None:
        self.texts = []

    def render(self, *, text, out_path):
        self.texts.append(text)
        Path(out_path).write_bytes(b"png")


class DummyMuxer:
    def __init__(self) -> None:
        self.durations: list[float] = []

    def mux(self, *, image, audio, duration, out_path):
        self.durations.append(duration)
        Path(out_path).write_text(Path(audio).read_text(encoding="utf-8"), encoding="utf-8")


class FailingMuxer(DummyMuxer):
    def __init__(self, fail_on_call: int) -> None:
        super().__init__()
        self.fail_on_call = fail_on_call

    def mux(self, *, image, audio, duration, out_path):
        if len(self.durations) + 1 == self.fail_on_call:
            Path(out_path).write_bytes(b"partial")
            raise MediaToolError("ffmpeg failed (exit=1): broken pipe")
        super().mux(image=image, audio=audio, duration=duration, out_path=out_path)


class DummyConcatenator:
    def __init__(self) -> None:
        self.order: list[str] = []

    def concat(self, *, clips, out_path):
        self.order = [Path(c).read_text(encoding="utf-8") for c in clips]
        Path(out_path).write_text("|".join(self.order), encoding="utf-8")


class DummyCache:
    def __init__(self, fail: bool = False) -> None:
        self.entries: dict[str, str] = {}
        self.fail = fail

    def record(self, fingerprint, location):
        if self.fail:
            raise OSError("disk full")
        self.entries[fingerprint] = location


def make_job(audio: Path, segments, *, attempts_made: int = 1, max_attempts: int = 3) -> JobRecord:
    return JobRecord(
        id="job-1",
        payload=JobPayload(
            audio_path=str(audio),
            fingerprint="abc123",
            base_text=BaseText(series_title="Series", main_title="Main", speaker="Speaker"),
            segments=segments,
        ),
        attempts_made=attempts_made,
        max_attempts=max_attempts,
    )


def make_pipeline(tmp_path: Path, **overrides) -> RenderSegmentedVideo:
    parts = dict(
        trimmer=DummyTrimmer(),
        prober=DummyProber(),
        renderer=DummyRenderer(),
        muxer=DummyMuxer(),
        concatenator=DummyConcatenator(),
        cache=DummyCache(),
        work_dir=tmp_path / "uploads",
        videos_dir=tmp_path / "public" / "videos",
    )
    parts.update(overrides)
    return RenderSegmentedVideo(**parts)


def write_source(tmp_path: Path) -> Path:
    uploads = tmp_path / "uploads"
    uploads.mkdir(parents=True, exist_ok=True)
    audio = uploads / "input.mp3"
    audio.write_text("source audio", encoding="utf-8")
    return audio


SEGMENTS = [
    Segment(start_time=0, end_time=4, extra_text="first"),
    Segment(start_time=4, end_time=9),
    Segment(start_time=9, end_time=15, extra_text="third"),
]


def test_pipeline_renders_segments_in_order_and_records_cache(tmp_path):
    audio = write_source(tmp_path)
    concat = DummyConcatenator()
    renderer = DummyRenderer()
    muxer = DummyMuxer()
    cache = DummyCache()
    pipeline = make_pipeline(tmp_path, concatenator=concat, renderer=renderer, muxer=muxer, cache=cache)
    progress: list[float] = []

    url = pipeline(make_job(audio, SEGMENTS), progress.append)

    assert url == "/videos/video-abc123.mp4"
    assert cache.entries == {"abc123": url}
    assert concat.order == ["0.0-4.0", "4.0-9.0", "9.0-15.0"]
    assert muxer.durations == [4.0, 5.0, 6.0]
    assert [t.extra_text for t in renderer.texts] == ["first", None, "third"]
    assert renderer.texts[0].series_title == "Series"
    assert progress == [0.0, 30.0, 60.0, 95, 100]
    assert (tmp_path / "public" / "videos" / "video-abc123.mp4").read_text(encoding="utf-8") == "0.0-4.0|4.0-9.0|9.0-15.0"


def test_success_removes_all_transient_files_and_input(tmp_path):
    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path)

    pipeline(make_job(audio, SEGMENTS), lambda _: None)

    assert list((tmp_path / "uploads").iterdir()) == []


def test_failure_with_retries_left_keeps_input_only(tmp_path):
    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path, muxer=FailingMuxer(fail_on_call=2))

    with pytest.raises(MediaToolError):
        pipeline(make_job(audio, SEGMENTS, attempts_made=1), lambda _: None)

    assert [p.name for p in (tmp_path / "uploads").iterdir()] == ["input.mp3"]
    assert not (tmp_path / "public" / "videos" / "video-abc123.mp4").exists()


def test_failure_on_last_attempt_removes_input(tmp_path):
    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path, muxer=FailingMuxer(fail_on_call=3))

    with pytest.raises(MediaToolError):
        pipeline(make_job(audio, SEGMENTS, attempts_made=3), lambda _: None)

    assert list((tmp_path / "uploads").iterdir()) == []


def test_segment_past_source_duration_fails(tmp_path):
    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path, prober=DummyProber(source_duration=10.0))

    with pytest.raises(MediaToolError, match="exceeds source duration"):
        pipeline(make_job(audio, SEGMENTS), lambda _: None)
    assert [p.name for p in (tmp_path / "uploads").iterdir()] == ["input.mp3"]


def test_incomplete_payload_is_data_integrity_error(tmp_path):
    audio = write_source(tmp_path)
    job = JobRecord(id="job-x", payload=JobPayload(audio_path=str(audio)), attempts_made=3, max_attempts=3)

    with pytest.raises(DataIntegrityError, match="fingerprint"):
        make_pipeline(tmp_path)(job, lambda _: None)
    assert not audio.exists()


def test_cache_write_failure_fails_the_attempt(tmp_path):
    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path, cache=DummyCache(fail=True))

    with pytest.raises(OSError):
        pipeline(make_job(audio, SEGMENTS), lambda _: None)
    assert audio.exists()


def test_unexpected_error_is_wrapped(tmp_path):
    class ExplodingRenderer:
        def render(self, *, text, out_path):
            raise RuntimeError("font exploded")

    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path, renderer=ExplodingRenderer())

    with pytest.raises(PipelineError, match="font exploded"):
        pipeline(make_job(audio, SEGMENTS), lambda _: None)


class SecondSegmentMuxer(DummyMuxer):
    """Fails on the second segment of every attempt."""

    def mux(self, *, image, audio, duration, out_path):
        if "-seg1" in Path(out_path).name:
            Path(out_path).write_bytes(b"partial")
            raise MediaToolError("ffmpeg failed (exit=1): broken pipe")
        super().mux(image=image, audio=audio, duration=duration, out_path=out_path)


class ProgressLoggingQueue(FileSystemJobQueue):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.progress_seen: list[float] = []

    def update_progress(self, job_id, percent):
        record = super().update_progress(job_id, percent)
        self.progress_seen.append(record.progress)
        return record


def test_retried_job_leaves_no_files_once_failed(tmp_path):
    audio = write_source(tmp_path)
    queue = ProgressLoggingQueue(tmp_path / "queue", max_attempts=3, backoff_s=0.01)
    job = queue.enqueue(
        make_job(audio, SEGMENTS).payload,
        idempotency_key="abc123",
    )
    pipeline = make_pipeline(tmp_path, muxer=SecondSegmentMuxer())
    pool = WorkerPool(queue=queue, processor=pipeline, concurrency=2, poll_interval_s=0.01)
    try:
        pool.drain(timeout_s=10)
    finally:
        pool.stop()

    stored = queue.get_job(job.id)
    assert stored.state == JobState.FAILED
    assert stored.attempts_made == 3
    assert stored.progress == 30
    assert queue.progress_seen == sorted(queue.progress_seen)
    assert list((tmp_path / "uploads").iterdir()) == []
    assert list((tmp_path / "public" / "videos").iterdir()) == []


def test_failed_concat_leaves_no_published_video(tmp_path):
    class PartialConcatenator:
        def concat(self, *, clips, out_path):
            Path(out_path).write_bytes(b"half a video")
            raise MediaToolError("ffmpeg failed (exit=1): disk quota exceeded")

    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path, concatenator=PartialConcatenator())

    with pytest.raises(MediaToolError):
        pipeline(make_job(audio, SEGMENTS, attempts_made=3), lambda _: None)

    assert list((tmp_path / "public" / "videos").iterdir()) == []
    assert list((tmp_path / "uploads").iterdir()) == []


def test_unrecorded_video_is_not_left_published(tmp_path):
    audio = write_source(tmp_path)
    pipeline = make_pipeline(tmp_path, cache=DummyCache(fail=True))

    with pytest.raises(OSError):
        pipeline(make_job(audio, SEGMENTS), lambda _: None)
    assert list((tmp_path / "public" / "videos").iterdir()) == []
