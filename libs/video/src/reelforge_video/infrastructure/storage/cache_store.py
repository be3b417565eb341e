from __future__ import annotations

import json
import threading
from pathlib import Path

from reelforge_video.application.ports import ArtifactCache
from reelforge_video.infrastructure.logging import get_logger
from reelforge_video.infrastructure.storage.locks import atomic_write_text, file_lock

log = get_logger(__name__)


class JsonArtifactCache(ArtifactCache):
    """Fingerprint -> video URL table persisted as one JSON object.

    Every process that opens the same file sees the other processes' writes:
    reads reload the table when the file changed on disk, and writes are a
    locked read-modify-replace.
    """

    def __init__(self, path: Path, public_dir: Path) -> None:
        self.path = Path(path)
        self.public_dir = Path(public_dir)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock = threading.Lock()
        self._entries: dict[str, str] = {}
        self._stamp: tuple[int, int, int] | None = None
        self._loaded = False

    def load(self) -> dict[str, str]:
        with self._lock:
            self._refresh(force=True)
            log.info("cache.loaded path=%s entries=%d", self.path, len(self._entries))
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            self._refresh()
            return len(self._entries)

    def lookup(self, fingerprint: str) -> str | None:
        with self._lock:
            self._refresh()
            return self._entries.get(fingerprint)

    def verify(self, location: str) -> bool:
        path = self.path_for(location)
        return path is not None and path.is_file()

    def path_for(self, location: str) -> Path | None:
        root = self.public_dir.resolve()
        candidate = (root / location.lstrip("/")).resolve()
        if root not in candidate.parents:
            return None
        return candidate

    def evict(self, fingerprint: str) -> None:
        with self._lock, file_lock(self.lock_path):
            self._refresh(force=True)
            if self._entries.pop(fingerprint, None) is None:
                return
            self._persist()
        log.info("cache.evicted fingerprint=%s", fingerprint)

    def record(self, fingerprint: str, location: str) -> None:
        with self._lock, file_lock(self.lock_path):
            self._refresh(force=True)
            self._entries[fingerprint] = location
            self._persist()
        log.info("cache.recorded fingerprint=%s location=%s", fingerprint, location)

    def _file_stamp(self) -> tuple[int, int, int] | None:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def _refresh(self, *, force: bool = False) -> None:
        stamp = self._file_stamp()
        if self._loaded and not force and stamp == self._stamp:
            return
        self._entries = self._read_file()
        self._stamp = stamp
        self._loaded = True

    def _read_file(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            log.error("cache.unreadable path=%s error=%s; starting empty", self.path, exc)
            return {}
        if not isinstance(data, dict):
            log.error("cache.unreadable path=%s error=not a JSON object; starting empty", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _persist(self) -> None:
        atomic_write_text(self.path, json.dumps(self._entries, indent=2, sort_keys=True))
        self._stamp = self._file_stamp()
