from __future__ import annotations

from pathlib import Path
from typing import Protocol

from reelforge_contracts.video_job import JobPayload, JobRecord
from reelforge_video.domain.models import FrameText


class AudioTrimmer(Protocol):
    def trim(self, *, source: Path, start: float, end: float, out_path: Path) -> None: ...


class MediaProber(Protocol):
    def duration(self, path: Path) -> float:
        """Return the real duration of a media file in seconds."""


class FrameRenderer(Protocol):
    def render(self, *, text: FrameText, out_path: Path) -> None: ...


class ClipMuxer(Protocol):
    def mux(self, *, image: Path, audio: Path, duration: float, out_path: Path) -> None: ...


class ClipConcatenator(Protocol):
    def concat(self, *, clips: list[Path], out_path: Path) -> None:
        """Join clips in the given order without re-encoding."""


class ArtifactCache(Protocol):
    def lookup(self, fingerprint: str) -> str | None: ...
    def verify(self, location: str) -> bool: ...
    def evict(self, fingerprint: str) -> None: ...
    def record(self, fingerprint: str, location: str) -> None: ...


class JobQueue(Protocol):
    def enqueue(self, payload: JobPayload, *, idempotency_key: str) -> JobRecord: ...
    def get_job(self, job_id: str) -> JobRecord | None: ...
    def claim_next(self) -> JobRecord | None: ...
    def update_progress(self, job_id: str, percent: float) -> JobRecord: ...
    def complete(self, job_id: str, result: str) -> JobRecord: ...
    def fail(self, job_id: str, reason: str) -> JobRecord: ...
    def requeue(self, job_id: str) -> JobRecord: ...
    def depth(self) -> int: ...
    def counts(self) -> dict[str, int]: ...
