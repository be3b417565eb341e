from __future__ import annotations

import uuid
from pathlib import Path
from urllib.parse import urlparse

import httpx

from reelforge_contracts.errors import ResourceFetchError, SubmissionError
from reelforge_video.infrastructure.logging import get_logger

log = get_logger(__name__)


def download_audio(
    url: str,
    dest_dir: Path,
    *,
    timeout_s: float = 120.0,
    client: httpx.Client | None = None,
) -> Path:
    """Stream ``url`` into a uniquely named file under ``dest_dir``.

    The extension is taken from the URL path (``.mp3`` when there is none).
    A partially written file is removed before the error propagates.
    """
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise SubmissionError("audioUrl must be an absolute http(s) URL", details=url)

    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / f"{uuid.uuid4()}{Path(parsed.path).suffix or '.mp3'}"
    log.info("download.start url=%s dest=%s", url, dest.name)

    owns_client = client is None
    http = client or httpx.Client(timeout=httpx.Timeout(timeout_s), follow_redirects=True)
    try:
        with http.stream("GET", url) as response:
            response.raise_for_status()
            with dest.open("wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
    except httpx.HTTPError as e:
        dest.unlink(missing_ok=True)
        raise ResourceFetchError(f"Failed to download audio from {url}: {e}") from e
    except OSError:
        dest.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            http.close()
    return dest
