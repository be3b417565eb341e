from __future__ import annotations

import json
from pathlib import Path

from reelforge_video.infrastructure.storage.cache_store import JsonArtifactCache


def make_cache(tmp_path: Path) -> JsonArtifactCache:
    public = tmp_path / "public"
    public.mkdir(exist_ok=True)
    return JsonArtifactCache(tmp_path / "videoCache.json", public)


def test_absent_file_loads_empty(tmp_path):
    cache = make_cache(tmp_path)
    assert cache.load() == {}
    assert cache.lookup("abc") is None
    assert len(cache) == 0


def test_record_persists_as_json_object(tmp_path):
    cache = make_cache(tmp_path)
    cache.record("abc", "/videos/video-abc.mp4")

    assert cache.lookup("abc") == "/videos/video-abc.mp4"
    data = json.loads((tmp_path / "videoCache.json").read_text(encoding="utf-8"))
    assert data == {"abc": "/videos/video-abc.mp4"}


def test_writes_from_another_instance_are_visible(tmp_path):
    producer = make_cache(tmp_path)
    worker = make_cache(tmp_path)
    producer.load()

    worker.record("abc", "/videos/video-abc.mp4")
    assert producer.lookup("abc") == "/videos/video-abc.mp4"

    producer.record("def", "/videos/video-def.mp4")
    assert worker.lookup("abc") == "/videos/video-abc.mp4"
    assert worker.lookup("def") == "/videos/video-def.mp4"
    assert len(worker) == 2


def test_evict_removes_only_that_entry(tmp_path):
    cache = make_cache(tmp_path)
    cache.record("abc", "/videos/video-abc.mp4")
    cache.record("def", "/videos/video-def.mp4")

    cache.evict("abc")
    cache.evict("missing")

    reloaded = make_cache(tmp_path)
    assert reloaded.load() == {"def": "/videos/video-def.mp4"}


def test_verify_checks_file_under_public_dir(tmp_path):
    cache = make_cache(tmp_path)
    videos = tmp_path / "public" / "videos"
    videos.mkdir()
    (videos / "video-abc.mp4").write_bytes(b"mp4")

    assert cache.verify("/videos/video-abc.mp4") is True
    assert cache.verify("/videos/video-gone.mp4") is False
    assert cache.verify("/../videoCache.json") is False


def test_corrupt_file_is_treated_as_empty(tmp_path):
    (tmp_path / "videoCache.json").write_text("{not json", encoding="utf-8")
    cache = make_cache(tmp_path)
    assert cache.load() == {}

    cache.record("abc", "/videos/video-abc.mp4")
    assert json.loads((tmp_path / "videoCache.json").read_text(encoding="utf-8")) == {
        "abc": "/videos/video-abc.mp4"
    }
