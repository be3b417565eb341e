from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

import httpx
from fastapi import FastAPI, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError

from reelforge_contracts.errors import ResourceFetchError, SubmissionError
from reelforge_contracts.video_job import VideoJobRequest
from reelforge_video.application.ports import JobQueue
from reelforge_video.application.use_cases import SubmitVideoJob
from reelforge_video.infrastructure.logging import get_logger, maybe_init_tracing, setup_logging
from reelforge_video.infrastructure.net.download import download_audio
from reelforge_video.infrastructure.queue.factory import build_job_queue
from reelforge_video.infrastructure.settings import Settings, load_env
from reelforge_video.infrastructure.storage.cache_store import JsonArtifactCache

log = get_logger("reelforge_api")

_UPLOAD_CHUNK = 1024 * 1024


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bad_request(error: str, details: object | None = None) -> JSONResponse:
    body: dict[str, object] = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(body, status_code=400)


async def _save_upload(upload: UploadFile, dest_dir: Path) -> Path:
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / f"{uuid.uuid4()}{Path(upload.filename or '').suffix}"
    try:
        with dest.open("wb") as f:
            while chunk := await upload.read(_UPLOAD_CHUNK):
                f.write(chunk)
    except OSError:
        dest.unlink(missing_ok=True)
        raise
    return dest


def create_app(
    settings: Settings | None = None,
    *,
    queue: JobQueue | None = None,
    cache: JsonArtifactCache | None = None,
    http_client: httpx.Client | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    settings.ensure_dirs()
    cache = cache or JsonArtifactCache(settings.cache_file, settings.public_dir)
    cache.load()
    queue = queue or build_job_queue(settings)
    submit = SubmitVideoJob(cache=cache, queue=queue)

    app = FastAPI(title="Reelforge API")
    app.mount("/videos", StaticFiles(directory=settings.videos_dir, check_dir=False), name="videos")

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/create-video")
    async def create_video(
        audio: UploadFile | None = File(None),
        audio_url: str | None = Form(None, alias="audioUrl"),
        series_title: str | None = Form(None, alias="seriesTitle"),
        main_title: str | None = Form(None, alias="mainTitle"),
        speaker: str | None = Form(None),
        time_segments: str | None = Form(None, alias="timeSegments"),
    ) -> JSONResponse:
        has_upload = audio is not None and bool(audio.filename)
        if not has_upload and not audio_url:
            return _bad_request("No audio provided.")
        if not series_title or not main_title or not speaker or not time_segments:
            return _bad_request("Missing required fields.")
        try:
            raw_segments = json.loads(time_segments)
        except json.JSONDecodeError as exc:
            return _bad_request("timeSegments must be valid JSON.", str(exc))
        try:
            request = VideoJobRequest(
                series_title=series_title,
                main_title=main_title,
                speaker=speaker,
                segments=raw_segments,
            )
        except ValidationError as exc:
            # inputs are left out: a rejected NaN is not JSON-serializable
            details = exc.errors(include_url=False, include_context=False, include_input=False)
            return _bad_request("Invalid submission.", details)

        try:
            if has_upload:
                audio_path = await _save_upload(audio, settings.upload_dir)
            else:
                audio_path = await run_in_threadpool(
                    download_audio,
                    audio_url,
                    settings.upload_dir,
                    timeout_s=settings.download_timeout_s,
                    client=http_client,
                )
            outcome = await run_in_threadpool(submit.run, request=request, audio_path=audio_path)
        except SubmissionError as exc:
            return _bad_request(str(exc), exc.details)
        except ResourceFetchError as exc:
            log.warning("api.audio_fetch_failed url=%s error=%s", audio_url, exc)
            return _bad_request("Could not fetch audio from audioUrl.", str(exc))
        except Exception:
            log.exception("api.create_video_failed")
            return JSONResponse(
                {"success": False, "error": "Failed to start video processing job."},
                status_code=500,
            )

        if outcome.cached:
            return JSONResponse({"success": True, "videoUrl": outcome.video_url, "cached": True})
        return JSONResponse(
            {"success": True, "message": "Video processing started.", "jobId": outcome.job_id},
            status_code=202,
        )

    @app.get("/status/{job_id}")
    def job_status(job_id: str) -> JSONResponse:
        job = queue.get_job(job_id)
        if job is None:
            return JSONResponse({"error": "Job not found."}, status_code=404)
        return JSONResponse(job.status_view())

    @app.get("/v1/metrics/summary")
    def metrics_summary() -> JSONResponse:
        return JSONResponse(
            {
                "queue_mode": settings.queue_mode,
                "queue_depth": queue.depth(),
                "job_counts": queue.counts(),
                "cache_entries": len(cache),
                "generated_at": _now_iso(),
            }
        )

    return app


def main() -> None:
    import uvicorn

    load_env(Path.cwd() / ".env")
    settings = Settings.from_env()
    setup_logging(fmt=settings.log_format)
    maybe_init_tracing("reelforge-api")
    app = create_app(settings)
    log.info("api.start host=%s port=%d queue_mode=%s", settings.host, settings.port, settings.queue_mode)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
