from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from reelforge_contracts.video_job import JobState, Segment, VideoJobRequest
from reelforge_video.application.fingerprint import fingerprint_file
from reelforge_video.application.use_cases import SubmitVideoJob
from reelforge_video.infrastructure.queue.fs_queue import FileSystemJobQueue
from reelforge_video.infrastructure.storage.cache_store import JsonArtifactCache


class BrokenQueue:
    def enqueue(self, payload, *, idempotency_key):
        raise ConnectionError("queue offline")


def make_request() -> VideoJobRequest:
    return VideoJobRequest.model_validate(
        {
            "seriesTitle": "Series",
            "mainTitle": "Main",
            "speaker": "Speaker",
            "segments": [{"startTime": 0, "endTime": 3, "extraText": "hello"}],
        }
    )


@pytest.fixture()
def env(tmp_path: Path):
    public = tmp_path / "public"
    (public / "videos").mkdir(parents=True)
    cache = JsonArtifactCache(tmp_path / "videoCache.json", public)
    queue = FileSystemJobQueue(tmp_path / "queue")
    audio = tmp_path / "upload.mp3"
    audio.write_bytes(b"audio-bytes")
    return cache, queue, audio, public


def test_cache_miss_enqueues_job(env):
    cache, queue, audio, _ = env
    request = make_request()
    expected_fp = fingerprint_file(request.base_text(), request.segments, audio)

    outcome = SubmitVideoJob(cache=cache, queue=queue).run(request=request, audio_path=audio)

    assert outcome.cached is False
    job = queue.get_job(outcome.job_id)
    assert job.state == JobState.WAITING
    assert job.fingerprint == expected_fp
    assert job.payload.fingerprint == expected_fp
    assert job.payload.audio_path == str(audio.resolve())
    assert job.payload.segments[0].extra_text == "hello"
    assert audio.exists()


def test_live_cache_hit_short_circuits_and_discards_upload(env):
    cache, queue, audio, public = env
    request = make_request()
    fp = fingerprint_file(request.base_text(), request.segments, audio)
    (public / "videos" / f"video-{fp}.mp4").write_bytes(b"mp4")
    cache.record(fp, f"/videos/video-{fp}.mp4")

    outcome = SubmitVideoJob(cache=cache, queue=queue).run(request=request, audio_path=audio)

    assert outcome.cached is True
    assert outcome.video_url == f"/videos/video-{fp}.mp4"
    assert queue.depth() == 0
    assert not audio.exists()


def test_stale_cache_entry_is_evicted_and_job_queued(env):
    cache, queue, audio, _ = env
    request = make_request()
    fp = fingerprint_file(request.base_text(), request.segments, audio)
    cache.record(fp, f"/videos/video-{fp}.mp4")

    outcome = SubmitVideoJob(cache=cache, queue=queue).run(request=request, audio_path=audio)

    assert outcome.cached is False
    assert cache.lookup(fp) is None
    assert queue.depth() == 1


def test_enqueue_failure_removes_upload(env):
    cache, _, audio, _ = env

    with pytest.raises(ConnectionError):
        SubmitVideoJob(cache=cache, queue=BrokenQueue()).run(request=make_request(), audio_path=audio)
    assert not audio.exists()


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_segment_times_are_rejected(bad):
    with pytest.raises(ValidationError):
        Segment(start_time=0, end_time=bad)
    with pytest.raises(ValidationError):
        Segment(start_time=bad, end_time=5)
