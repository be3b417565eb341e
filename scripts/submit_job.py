#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

import httpx

TERMINAL = {"completed", "failed"}


def _segments(raw: str) -> str:
    path = Path(raw)
    text = path.read_text(encoding="utf-8") if path.exists() else raw
    json.loads(text)
    return text


def main() -> None:
    parser = argparse.ArgumentParser(description="Submit a video job to the API and wait for the result.")
    parser.add_argument("--api", default="http://localhost:3000", help="API base URL")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--audio", type=Path, help="Local audio file to upload")
    source.add_argument("--audio-url", help="Remote audio URL the API should fetch")
    parser.add_argument("--series-title", required=True)
    parser.add_argument("--main-title", required=True)
    parser.add_argument("--speaker", required=True)
    parser.add_argument(
        "--segments",
        required=True,
        help='JSON list or path to a JSON file, e.g. [{"startTime": 0, "endTime": 5}]',
    )
    parser.add_argument("--poll", type=float, default=2.0, help="Seconds between status checks")
    parser.add_argument("--no-wait", action="store_true", help="Print the job id and exit")
    args = parser.parse_args()

    data = {
        "seriesTitle": args.series_title,
        "mainTitle": args.main_title,
        "speaker": args.speaker,
        "timeSegments": _segments(args.segments),
    }
    with httpx.Client(base_url=args.api, timeout=httpx.Timeout(300.0)) as client:
        if args.audio:
            with args.audio.open("rb") as fh:
                resp = client.post("/create-video", data=data, files={"audio": (args.audio.name, fh)})
        else:
            resp = client.post("/create-video", data={**data, "audioUrl": args.audio_url})

        body = resp.json()
        if resp.status_code == 200 and body.get("cached"):
            print(f"Cached video_url={args.api.rstrip('/')}{body['videoUrl']}")
            return
        if resp.status_code != 202:
            print(f"Submission failed status={resp.status_code} body={json.dumps(body)}", file=sys.stderr)
            sys.exit(1)

        job_id = body["jobId"]
        print(f"Queued job_id={job_id}")
        if args.no_wait:
            return

        while True:
            status = client.get(f"/status/{job_id}").json()
            print(f"job_id={job_id} state={status['state']} progress={status['progress']:.0f}")
            if status["state"] in TERMINAL:
                break
            time.sleep(args.poll)

    if status["state"] == "failed":
        print(f"Job failed error={status.get('error')}", file=sys.stderr)
        sys.exit(1)
    print(f"Done video_url={args.api.rstrip('/')}{status['result']}")


if __name__ == "__main__":
    main()
