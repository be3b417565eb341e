from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from reelforge_video.infrastructure.logging import get_logger

log = get_logger(__name__)

_JOB_STARTED = Counter("reelforge_job_started_total", "Job attempts started")
_JOB_SUCCEEDED = Counter("reelforge_job_succeeded_total", "Jobs completed")
_JOB_FAILED = Counter("reelforge_job_failed_total", "Jobs terminally failed")
_JOB_RETRIED = Counter("reelforge_job_retried_total", "Job attempts scheduled for retry")
_CACHE_LOOKUPS = Counter("reelforge_cache_lookups_total", "Artifact cache lookups", ["outcome"])
_STAGE_SEC = Histogram(
    "reelforge_stage_seconds",
    "Pipeline stage durations in seconds",
    ["stage"],
    buckets=(0.1, 0.5, 1, 2, 4, 8, 16, 32, 60, 120, 300, 600),
)
_QUEUE_DEPTH = Gauge("reelforge_queue_depth", "Jobs waiting in the queue")

_server_started = False

def maybe_start_server(port: int) -> None:
    global _server_started
    if _server_started:
        return
    try:
        start_http_server(port)
        _server_started = True
    except OSError as exc:
        log.warning("metrics.server_failed port=%s error=%s", port, exc)

def job_started() -> None:
    _JOB_STARTED.inc()

def job_succeeded() -> None:
    _JOB_SUCCEEDED.inc()

def job_failed() -> None:
    _JOB_FAILED.inc()

def job_retried() -> None:
    _JOB_RETRIED.inc()

def cache_lookup(outcome: str) -> None:
    _CACHE_LOOKUPS.labels(outcome=outcome).inc()

def observe_stage(stage: str, duration_sec: float) -> None:
    _STAGE_SEC.labels(stage=stage).observe(max(0.0, duration_sec))

def set_queue_depth(depth: int) -> None:
    _QUEUE_DEPTH.set(depth)
