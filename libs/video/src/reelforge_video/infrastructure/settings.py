from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from reelforge_contracts.errors import ConfigurationError

QUEUE_MODES = {"dir", "redis"}


def load_env(env_path: Path | None = None) -> None:
    path = env_path or Path.cwd() / ".env"
    if path.exists():
        load_dotenv(path)


def env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path("data")
    upload_dir: Path = Path("data/uploads")
    public_dir: Path = Path("data/public")
    cache_file: Path = Path("data/videoCache.json")
    queue_mode: str = "dir"
    queue_dir: Path = Path("data/queue")
    queue_redis_url: str = "redis://localhost:6379/0"
    queue_redis_prefix: str = "reelforge:video-processing"
    poll_interval_s: float = 1.0
    job_attempts: int = 3
    job_backoff_s: float = 1.0
    worker_concurrency: int = 5
    rate_limit_max: int = 100
    rate_limit_window_s: float = 30.0
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    ffmpeg_timeout_s: float = 600.0
    frame_background: Path | None = None
    frame_font_path: Path | None = None
    download_timeout_s: float = 120.0
    log_format: str = "plain"
    metrics_enabled: bool = False
    metrics_port: int = 9000
    host: str = "localhost"
    port: int = 3000

    @property
    def videos_dir(self) -> Path:
        return self.public_dir / "videos"

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = Path(os.getenv("DATA_DIR", "data"))
        queue_mode = os.getenv("QUEUE_MODE", "dir").strip().lower()
        if queue_mode not in QUEUE_MODES:
            raise ConfigurationError(f"QUEUE_MODE must be one of {sorted(QUEUE_MODES)}, got {queue_mode!r}")
        background = os.getenv("FRAME_BACKGROUND")
        font_path = os.getenv("FRAME_FONT_PATH")
        production = os.getenv("APP_ENV", "").lower() == "production"
        return cls(
            data_dir=data_dir,
            upload_dir=Path(os.getenv("UPLOAD_DIR", str(data_dir / "uploads"))),
            public_dir=Path(os.getenv("PUBLIC_DIR", str(data_dir / "public"))),
            cache_file=Path(os.getenv("CACHE_FILE", str(data_dir / "videoCache.json"))),
            queue_mode=queue_mode,
            queue_dir=Path(os.getenv("QUEUE_DIR", str(data_dir / "queue"))),
            queue_redis_url=os.getenv("QUEUE_REDIS_URL", "redis://localhost:6379/0"),
            queue_redis_prefix=os.getenv("QUEUE_REDIS_PREFIX", "reelforge:video-processing"),
            poll_interval_s=_env_float("QUEUE_POLL_INTERVAL_S", 1.0),
            job_attempts=max(1, _env_int("JOB_ATTEMPTS", 3)),
            job_backoff_s=_env_float("JOB_BACKOFF_S", 1.0),
            worker_concurrency=max(1, _env_int("WORKER_CONCURRENCY", 5)),
            rate_limit_max=max(1, _env_int("RATE_LIMIT_MAX", 100)),
            rate_limit_window_s=_env_float("RATE_LIMIT_WINDOW_S", 30.0),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
            ffmpeg_timeout_s=_env_float("FFMPEG_TIMEOUT_S", 600.0),
            frame_background=Path(background) if background else None,
            frame_font_path=Path(font_path) if font_path else None,
            download_timeout_s=_env_float("DOWNLOAD_TIMEOUT_S", 120.0),
            log_format=os.getenv("LOG_FORMAT", "plain").lower(),
            metrics_enabled=env_bool("METRICS_ENABLED", False),
            metrics_port=_env_int("METRICS_PORT", 9000),
            host=os.getenv("HOST", "0.0.0.0" if production else "localhost"),
            port=_env_int("PORT", 3000),
        )

    def ensure_dirs(self) -> None:
        for path in [self.data_dir, self.upload_dir, self.public_dir, self.videos_dir, self.cache_file.parent]:
            path.mkdir(parents=True, exist_ok=True)
