"""Content identity for a video job.

The digest covers the job's text metadata, its ordered segments and the raw
audio bytes. Metadata is serialized as JSON with sorted keys and compact
separators so structurally equal inputs hash the same no matter which order a
client sent the fields in.
"""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable

from reelforge_contracts.video_job import BaseText, Segment

_READ_CHUNK = 1024 * 1024


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint_document(base_text: BaseText, segments: Iterable[Segment]) -> dict[str, Any]:
    time_segments: list[dict[str, Any]] = []
    for seg in segments:
        item: dict[str, Any] = {"startTime": float(seg.start_time), "endTime": float(seg.end_time)}
        if seg.extra_text is not None:
            item["extraText"] = seg.extra_text
        time_segments.append(item)
    return {
        "baseTextData": {
            "seriesTitle": base_text.series_title,
            "mainTitle": base_text.main_title,
            "speaker": base_text.speaker,
        },
        "timeSegments": time_segments,
    }


def compute_fingerprint(base_text: BaseText, segments: Iterable[Segment], audio_bytes: bytes) -> str:
    digest = hashlib.sha256()
    digest.update(canonical_json(fingerprint_document(base_text, segments)).encode("utf-8"))
    digest.update(audio_bytes)
    return digest.hexdigest()


def fingerprint_file(base_text: BaseText, segments: Iterable[Segment], audio_path: Path) -> str:
    """Same digest as ``compute_fingerprint`` but streams the audio from disk.

    ``OSError`` from reading the file propagates.
    """
    digest = hashlib.sha256()
    digest.update(canonical_json(fingerprint_document(base_text, segments)).encode("utf-8"))
    with Path(audio_path).open("rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()
