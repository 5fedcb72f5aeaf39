from __future__ import annotations

import re
import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import m3u8

from streamhub.config.defaults import MANIFEST_NAME
from streamhub.util.logging import get_logger
from streamhub.util.security import validate_source_id

from .errors import StoreFault

logger = get_logger(__name__)

SEGMENT_SUFFIXES = {".ts", ".m4s", ".mp4", ".aac"}
_SEQUENCE_RE = re.compile(r"(\d+)$")


def segment_sequence(name: str) -> int | None:
    match = _SEQUENCE_RE.search(Path(name).stem)
    if match is None:
        return None
    return int(match.group(1))


@dataclass(frozen=True)
class ManifestInfo:
    media_sequence: int
    target_duration: float | None
    segments: tuple[str, ...]
    mtime: float

    @property
    def segment_names(self) -> set[str]:
        return {Path(uri).name for uri in self.segments}


class SegmentStore:
    """Per-source HLS output areas and their housekeeping.

    Segments are only deleted once the current manifest has stopped referencing
    them and they have stayed unreferenced for ``linger_seconds``, so a client
    holding the previous manifest can still fetch every chunk it lists.
    """

    def __init__(self, root: Path, linger_seconds: float = 10.0, clock: Callable[[], float] = time.time) -> None:
        self.root = root
        self.linger_seconds = max(0.0, linger_seconds)
        self.clock = clock
        self._unreferenced_since: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    def area_for(self, source_id: str) -> Path:
        return self.root / validate_source_id(source_id)

    def manifest_path(self, source_id: str) -> Path:
        return self.area_for(source_id) / MANIFEST_NAME

    def prepare(self, source_id: str) -> Path:
        area = self.area_for(source_id)
        try:
            area.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreFault(source_id, f"cannot create stream area: {exc}") from exc
        return area

    def active_areas(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def read_manifest(self, source_id: str) -> ManifestInfo | None:
        path = self.manifest_path(source_id)
        try:
            stat = path.stat()
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError:
            logger.debug("manifest unreadable: %s", source_id, exc_info=True)
            return None
        if not text.lstrip().startswith("#EXTM3U"):
            return None
        try:
            playlist = m3u8.loads(text)
        except (ValueError, AttributeError, IndexError):
            logger.debug("manifest parse failed: %s", source_id, exc_info=True)
            return None
        if playlist.is_variant:
            return None
        return ManifestInfo(
            media_sequence=int(playlist.media_sequence or 0),
            target_duration=float(playlist.target_duration) if playlist.target_duration else None,
            segments=tuple(seg.uri for seg in playlist.segments if seg.uri),
            mtime=stat.st_mtime,
        )

    def is_ready(self, source_id: str) -> bool:
        info = self.read_manifest(source_id)
        if info is None or not info.segments:
            return False
        area = self.area_for(source_id)
        return all((area / name).is_file() for name in info.segment_names)

    def last_output_at(self, source_id: str) -> float | None:
        area = self.area_for(source_id)
        latest: float | None = None
        try:
            entries = list(area.iterdir())
        except FileNotFoundError:
            return None
        except OSError:
            logger.debug("stream area unreadable: %s", source_id, exc_info=True)
            return None
        for path in entries:
            if path.name != MANIFEST_NAME and path.suffix not in SEGMENT_SUFFIXES:
                continue
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if latest is None or mtime > latest:
                latest = mtime
        return latest

    def housekeep(self, source_id: str) -> int:
        info = self.read_manifest(source_id)
        if info is None:
            return 0
        area = self.area_for(source_id)
        referenced = info.segment_names
        sequences = [seq for seq in (segment_sequence(name) for name in referenced) if seq is not None]
        oldest_listed = min(sequences) if sequences else info.media_sequence
        now = self.clock()
        deleted = 0

        with self._lock:
            pending = self._unreferenced_since.setdefault(source_id, {})
            try:
                entries = list(area.iterdir())
            except OSError:
                return 0
            seen: set[str] = set()
            for path in entries:
                name = path.name
                if name.endswith(".tmp"):
                    self._drop_stale_temp(path, now)
                    continue
                if path.suffix not in SEGMENT_SUFFIXES:
                    continue
                seen.add(name)
                if name in referenced:
                    pending.pop(name, None)
                    continue
                sequence = segment_sequence(name)
                if sequence is None or sequence >= oldest_listed:
                    continue
                first_unlisted = pending.setdefault(name, now)
                if now - first_unlisted < self.linger_seconds:
                    continue
                try:
                    path.unlink(missing_ok=True)
                    deleted += 1
                except OSError:
                    logger.warning("failed to age out segment %s for %s", name, source_id, exc_info=True)
                    continue
                pending.pop(name, None)
            for name in list(pending):
                if name not in seen:
                    pending.pop(name, None)
        if deleted:
            logger.debug("aged out %d segment(s) for %s", deleted, source_id)
        return deleted

    def _drop_stale_temp(self, path: Path, now: float) -> None:
        try:
            if now - path.stat().st_mtime > max(self.linger_seconds, 5.0):
                path.unlink(missing_ok=True)
        except OSError:
            return

    def purge(self, source_id: str) -> None:
        area = self.area_for(source_id)
        with self._lock:
            self._unreferenced_since.pop(source_id, None)
        try:
            shutil.rmtree(area)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StoreFault(source_id, f"cannot purge stream area: {exc}") from exc
        logger.debug("stream area purged: %s", source_id)
