from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import pytest

from devcells.errors import PersistenceError
from devcells.tracking import ContainerTracker, HeartbeatThread


def _files(path: Path) -> set[str]:
    return {p.name for p in path.iterdir()}


class TestContainerTracker:
    def test_missing_file_starts_empty(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path / "data")
        assert tracker.get_tracked() == []
        assert (tmp_path / "data").is_dir()

    def test_tracked_entries_survive_reload(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        a = tracker.track("aaa111", "ws-1", "feature/a", "/repo")
        b = tracker.track("bbb222", "ws-2", "feature/b", "/repo")

        fresh = ContainerTracker(tmp_path)
        loaded = {entry.container_id: entry for entry in fresh.get_tracked()}
        assert set(loaded) == {"aaa111", "bbb222"}
        assert loaded["aaa111"].to_dict() == a.to_dict()
        assert loaded["bbb222"].to_dict() == b.to_dict()

    def test_untrack_and_clear(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.track("aaa111", "ws-1", "a", "/repo")
        tracker.track("bbb222", "ws-2", "b", "/repo")
        tracker.untrack("aaa111")
        tracker.untrack("missing")
        assert ContainerTracker(tmp_path).get_tracked_ids() == ["bbb222"]
        tracker.clear()
        assert ContainerTracker(tmp_path).get_tracked_ids() == []

    def test_no_temp_files_left_behind(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.track("aaa111", "ws-1", "a", "/repo")
        tracker.track("bbb222", "ws-2", "b", "/repo")
        tracker.untrack("aaa111")
        tracker.clear()
        tracker.track("ccc333", "ws-3", "c", "/repo")
        assert _files(tmp_path) == {"containers.json"}

    def test_file_is_a_json_array(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.track("aaa111", "ws-1", "a", "/repo")
        data = json.loads(tracker.tracking_path.read_text())
        assert isinstance(data, list)
        assert data[0]["container_id"] == "aaa111"
        assert data[0]["repo_path"] == "/repo"

    def test_corrupt_file_raises(self, tmp_path: Path):
        (tmp_path / "containers.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            ContainerTracker(tmp_path)

    def test_tracked_for_branch_filters_repo(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.track("aaa111", "ws-1", "main", "/repo-a")
        tracker.track("bbb222", "ws-2", "main", "/repo-b")
        tracker.track("ccc333", "ws-3", "other", "/repo-a")
        assert [c.container_id for c in tracker.tracked_for_branch("main", "/repo-a")] == ["aaa111"]
        assert len(tracker.tracked_for_branch("main")) == 2

    def test_concurrent_tracking(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        threads = [
            threading.Thread(target=tracker.track, args=(f"id{i:03d}", f"ws-{i}", f"b{i}", "/repo"))
            for i in range(20)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(ContainerTracker(tmp_path).get_tracked()) == 20
        assert _files(tmp_path) == {"containers.json"}

    def test_failed_save_leaves_memory_unchanged(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        tracker = ContainerTracker(tmp_path)
        tracker.track("aaa111", "ws-1", "feature/a", "/repo")

        def broken_write(path, data):
            raise OSError("disk full")

        monkeypatch.setattr("devcells.tracking._atomic_write_json", broken_write)
        with pytest.raises(PersistenceError):
            tracker.track("bbb222", "ws-2", "feature/b", "/repo")
        with pytest.raises(PersistenceError):
            tracker.untrack("aaa111")
        with pytest.raises(PersistenceError):
            tracker.clear()
        assert tracker.get_tracked_ids() == ["aaa111"]
        assert ContainerTracker(tmp_path).get_tracked_ids() == ["aaa111"]


class TestHeartbeat:
    def test_absent_heartbeat_is_stale(self, tmp_path: Path):
        assert ContainerTracker(tmp_path).is_heartbeat_stale()

    def test_fresh_after_write(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.write_heartbeat(4242)
        assert not tracker.is_heartbeat_stale()
        pid, stamp = tracker.read_heartbeat()
        assert pid == 4242
        assert abs(stamp - time.time()) < 5

    def test_old_heartbeat_is_stale(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.write_heartbeat()
        old = time.time() - 120
        os.utime(tracker.heartbeat_path, (old, old))
        assert tracker.is_heartbeat_stale()

    def test_remove_heartbeat_is_idempotent(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.write_heartbeat()
        tracker.remove_heartbeat()
        tracker.remove_heartbeat()
        assert tracker.read_heartbeat() is None

    def test_orphans_only_reported_when_stale(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        tracker.track("aaa111", "ws-1", "a", "/repo")
        assert [c.container_id for c in tracker.get_orphaned_containers()] == ["aaa111"]
        tracker.write_heartbeat()
        assert tracker.get_orphaned_containers() == []


def test_heartbeat_thread_writes_and_removes(tmp_path: Path) -> None:
    tracker = ContainerTracker(tmp_path)
    beat = HeartbeatThread(tracker, interval=0.05, pid=99)
    with beat:
        assert tracker.read_heartbeat()[0] == 99
        first = tracker.heartbeat_path.stat().st_mtime_ns
        deadline = time.time() + 2
        while tracker.heartbeat_path.stat().st_mtime_ns == first and time.time() < deadline:
            time.sleep(0.02)
        assert not tracker.is_heartbeat_stale()
    assert not tracker.heartbeat_path.exists()
