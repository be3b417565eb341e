from __future__ import annotations

import subprocess
import uuid
from pathlib import Path

from reelforge_contracts.errors import MediaToolError
from reelforge_video.application.ports import AudioTrimmer, ClipConcatenator, ClipMuxer, MediaProber
from reelforge_video.infrastructure.logging import get_logger

log = get_logger(__name__)


def _tail(s: str | None, n: int = 2000) -> str:
    s = str(s or "")
    return s if len(s) <= n else s[-n:]


def _seconds(value: float) -> str:
    return f"{value:.6f}"


def run_tool(argv: list[str], *, timeout_s: float | None = None) -> subprocess.CompletedProcess[str]:
    log.debug("media.run argv=%s", " ".join(argv))
    try:
        return subprocess.run(argv, check=True, capture_output=True, text=True, timeout=timeout_s)
    except FileNotFoundError as ex:
        raise MediaToolError(f"{argv[0]} not found on PATH", argv=argv) from ex
    except subprocess.TimeoutExpired as ex:
        raise MediaToolError(f"{argv[0]} timed out after {timeout_s}s", argv=argv) from ex
    except subprocess.CalledProcessError as ex:
        stderr = _tail(ex.stderr)
        log.error("media.failed tool=%s exit=%s stderr=%s", argv[0], ex.returncode, stderr)
        last_line = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        raise MediaToolError(
            f"{Path(argv[0]).name} failed (exit={ex.returncode}): {last_line}",
            argv=argv,
            stderr=stderr,
        ) from ex


class FfprobeProber(MediaProber):
    def __init__(self, ffprobe_bin: str = "ffprobe", timeout_s: float = 30.0) -> None:
        self.ffprobe_bin = ffprobe_bin
        self.timeout_s = timeout_s

    def duration(self, path: Path) -> float:
        argv = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        out = run_tool(argv, timeout_s=self.timeout_s).stdout.strip()
        try:
            value = float(out)
        except ValueError as ex:
            raise MediaToolError(f"Could not probe duration of {path}: {out!r}", argv=argv) from ex
        if value <= 0:
            raise MediaToolError(f"Invalid audio duration detected for {path}: {value}", argv=argv)
        return value


class FfmpegAudioTrimmer(AudioTrimmer):
    def __init__(self, ffmpeg_bin: str = "ffmpeg", timeout_s: float = 600.0) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout_s = timeout_s

    def trim(self, *, source: Path, start: float, end: float, out_path: Path) -> None:
        if end <= start:
            raise MediaToolError(f"Invalid trim range [{start}, {end})")
        argv = [
            self.ffmpeg_bin,
            "-y",
            "-ss",
            _seconds(start),
            "-i",
            str(source),
            "-t",
            _seconds(end - start),
            str(out_path),
        ]
        run_tool(argv, timeout_s=self.timeout_s)


class FfmpegClipMuxer(ClipMuxer):
    """Loop a still image over an audio track for exactly the audio's duration."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", timeout_s: float = 600.0, audio_bitrate: str = "192k") -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout_s = timeout_s
        self.audio_bitrate = audio_bitrate

    def mux(self, *, image: Path, audio: Path, duration: float, out_path: Path) -> None:
        argv = [
            self.ffmpeg_bin,
            "-y",
            "-loop",
            "1",
            "-i",
            str(image),
            "-i",
            str(audio),
            "-c:v",
            "libx264",
            "-tune",
            "stillimage",
            "-c:a",
            "aac",
            "-b:a",
            self.audio_bitrate,
            "-pix_fmt",
            "yuv420p",
            "-t",
            _seconds(duration),
            str(out_path),
        ]
        run_tool(argv, timeout_s=self.timeout_s)


class FfmpegConcatenator(ClipConcatenator):
    """Concat demuxer with stream copy; clips are joined in list order."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", timeout_s: float = 600.0) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout_s = timeout_s

    @staticmethod
    def list_file_content(clips: list[Path]) -> str:
        lines = []
        for clip in clips:
            escaped = str(Path(clip).resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        return "\n".join(lines) + "\n"

    def concat(self, *, clips: list[Path], out_path: Path) -> None:
        if not clips:
            raise MediaToolError("No input videos provided for concatenation.")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        # beside the clips, never in the served output directory
        list_path = Path(clips[0]).parent / f".concat-list-{uuid.uuid4().hex}.txt"
        list_path.write_text(self.list_file_content(clips), encoding="utf-8")
        argv = [
            self.ffmpeg_bin,
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(list_path),
            "-c",
            "copy",
            str(out_path),
        ]
        try:
            run_tool(argv, timeout_s=self.timeout_s)
        finally:
            list_path.unlink(missing_ok=True)
