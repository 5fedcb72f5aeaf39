from __future__ import annotations

import threading
import time

import pytest

from fake_transcoder import write_manifest, write_segment
from streamhub.engine.errors import StoreFault
from streamhub.engine.segments import SegmentStore, segment_sequence


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _store(tmp_path, linger: float = 1.0, clock=None) -> SegmentStore:
    return SegmentStore(tmp_path / "streams", linger_seconds=linger, clock=clock or time.time)


def test_segment_sequence_parses_numbered_names() -> None:
    assert segment_sequence("seg_000042.ts") == 42
    assert segment_sequence("seg_1700000000.ts") == 1700000000
    assert segment_sequence("index.m3u8") is None


def test_area_rejects_path_traversal(tmp_path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValueError):
        store.area_for("../outside")


def test_read_manifest_and_readiness(tmp_path) -> None:
    store = _store(tmp_path)
    area = store.prepare("cam-1")

    assert store.read_manifest("cam-1") is None
    assert store.is_ready("cam-1") is False

    (area / "index.m3u8").write_text("not a playlist", encoding="utf-8")
    assert store.read_manifest("cam-1") is None

    write_manifest(area, [7, 8])
    info = store.read_manifest("cam-1")
    assert info is not None
    assert info.media_sequence == 7
    assert info.segment_names == {"seg_000007.ts", "seg_000008.ts"}
    assert store.is_ready("cam-1") is False

    write_segment(area, 7)
    write_segment(area, 8)
    assert store.is_ready("cam-1") is True
    assert store.last_output_at("cam-1") is not None


def test_empty_manifest_is_not_ready(tmp_path) -> None:
    store = _store(tmp_path)
    area = store.prepare("cam-1")
    write_manifest(area, [])
    assert store.is_ready("cam-1") is False


def test_housekeep_deletes_only_dropped_segments_after_linger(tmp_path) -> None:
    clock = _Clock(1000.0)
    store = _store(tmp_path, linger=5.0, clock=clock)
    area = store.prepare("cam-1")
    for sequence in range(0, 7):
        write_segment(area, sequence)
    write_manifest(area, [3, 4, 5])

    assert store.housekeep("cam-1") == 0
    clock.now = 1004.0
    assert store.housekeep("cam-1") == 0
    clock.now = 1006.0
    assert store.housekeep("cam-1") == 3

    remaining = sorted(path.name for path in area.glob("seg_*.ts"))
    # seg 6 is written but not yet listed: it is a future segment, never an aged one.
    assert remaining == ["seg_000003.ts", "seg_000004.ts", "seg_000005.ts", "seg_000006.ts"]
    assert store.is_ready("cam-1") is True


def test_housekeep_linger_restarts_when_segment_is_listed_again(tmp_path) -> None:
    clock = _Clock(1000.0)
    store = _store(tmp_path, linger=5.0, clock=clock)
    area = store.prepare("cam-1")
    for sequence in range(0, 4):
        write_segment(area, sequence)
    write_manifest(area, [2, 3])
    store.housekeep("cam-1")

    write_manifest(area, [1, 2, 3])
    clock.now = 1006.0
    assert store.housekeep("cam-1") == 1
    assert not (area / "seg_000000.ts").exists()
    assert (area / "seg_000001.ts").exists()


def test_housekeep_without_manifest_keeps_everything(tmp_path) -> None:
    store = _store(tmp_path, linger=0.0)
    area = store.prepare("cam-1")
    write_segment(area, 1)
    assert store.housekeep("cam-1") == 0
    assert (area / "seg_000001.ts").exists()


def test_housekeep_drops_stale_temp_files(tmp_path) -> None:
    clock = _Clock(time.time() + 60.0)
    store = _store(tmp_path, linger=1.0, clock=clock)
    area = store.prepare("cam-1")
    write_segment(area, 1)
    write_manifest(area, [1])
    (area / "seg_000002.ts.tmp").write_bytes(b"partial")

    store.housekeep("cam-1")

    assert not (area / "seg_000002.ts.tmp").exists()
    assert (area / "seg_000001.ts").exists()


def test_manifest_never_references_deleted_segment_under_rapid_rotation(tmp_path) -> None:
    store = _store(tmp_path, linger=0.3)
    area = store.prepare("cam-1")
    stop = threading.Event()
    violations: list[str] = []

    def _writer() -> None:
        window: list[int] = []
        sequence = 0
        while not stop.is_set():
            write_segment(area, sequence)
            window = [*window, sequence][-3:]
            write_manifest(area, window)
            sequence += 1
            time.sleep(0.005)

    def _housekeeper() -> None:
        while not stop.is_set():
            store.housekeep("cam-1")
            time.sleep(0.002)

    def _reader() -> None:
        while not stop.is_set():
            info = store.read_manifest("cam-1")
            if info is not None:
                for name in info.segment_names:
                    if not (area / name).is_file():
                        violations.append(name)
            time.sleep(0.001)

    threads = [threading.Thread(target=fn) for fn in (_writer, _housekeeper, _reader)]
    for thread in threads:
        thread.start()
    time.sleep(1.5)
    stop.set()
    for thread in threads:
        thread.join(timeout=2.0)

    assert violations == []
    # Aging keeps up: only the window plus segments still lingering remain on disk.
    assert len(list(area.glob("seg_*.ts"))) < 120


def test_purge_is_idempotent(tmp_path) -> None:
    store = _store(tmp_path)
    area = store.prepare("cam-1")
    write_segment(area, 1)

    store.purge("cam-1")
    assert not area.exists()
    store.purge("cam-1")
    assert store.active_areas() == []


def test_prepare_failure_is_store_fault(tmp_path) -> None:
    root = tmp_path / "streams"
    root.parent.mkdir(parents=True, exist_ok=True)
    root.write_text("not a directory", encoding="utf-8")
    store = SegmentStore(root)

    with pytest.raises(StoreFault):
        store.prepare("cam-1")
