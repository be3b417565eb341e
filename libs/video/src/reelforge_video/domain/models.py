from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class FrameText:
    series_title: str
    main_title: str
    speaker: str
    extra_text: str | None = None


@dataclass(frozen=True)
class SegmentWorkspace:
    """Transient files produced for one segment of one attempt."""

    segment_id: str
    trimmed_audio: Path
    frame_image: Path
    clip: Path

    @classmethod
    def allocate(cls, work_dir: Path, segment_id: str) -> "SegmentWorkspace":
        return cls(
            segment_id=segment_id,
            trimmed_audio=work_dir / f"trimmed-{segment_id}.mp3",
            frame_image=work_dir / f"image-{segment_id}.png",
            clip=work_dir / f"intermediate-{segment_id}.mp4",
        )

    def paths(self) -> list[Path]:
        return [self.trimmed_audio, self.frame_image, self.clip]
