"""Crash-recovery registry of the containers this process created.

The tracking file is a cache: it only lets reconciliation tell expected
containers from orphans. A heartbeat file next to it records whether the
process that owns the tracking data is still alive.
"""

from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import (
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_HEARTBEAT_STALE_SECONDS,
    HEARTBEAT_FILE,
    TRACKING_FILE,
)
from .errors import PersistenceError
from .io_utils import _atomic_write_bytes, _atomic_write_json
from .models import TrackedContainer
from .utils import _now_iso


class ContainerTracker:
    """Durable set of tracked containers keyed by container id.

    Mutations within one instance are serialized by a single lock. There is
    no cross-process locking: a second process must consult the heartbeat
    before touching the same directory.
    """

    def __init__(self, base_dir: Path, stale_after: float = DEFAULT_HEARTBEAT_STALE_SECONDS) -> None:
        self.base_dir = Path(base_dir)
        self.stale_after = stale_after
        self._lock = threading.Lock()
        self._containers: dict[str, TrackedContainer] = {}
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"failed to create tracking directory {self.base_dir}: {exc}") from exc
        self._load()

    @property
    def tracking_path(self) -> Path:
        return self.base_dir / TRACKING_FILE

    @property
    def heartbeat_path(self) -> Path:
        return self.base_dir / HEARTBEAT_FILE

    def _load(self) -> None:
        path = self.tracking_path
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"failed to load tracking data from {path}: {exc}") from exc
        if not isinstance(raw, list):
            raise PersistenceError(f"{path.name}: expected array, got {type(raw).__name__}")
        for item in raw:
            if not isinstance(item, dict):
                continue
            entry = TrackedContainer.from_dict(item)
            if entry.container_id:
                self._containers[entry.container_id] = entry

    def _save(self) -> None:
        payload = [entry.to_dict() for entry in self._containers.values()]
        try:
            _atomic_write_json(self.tracking_path, payload)
        except OSError as exc:
            raise PersistenceError(f"failed to write {self.tracking_path}: {exc}") from exc

    def _commit(self, containers: dict[str, TrackedContainer]) -> None:
        # Caller holds the lock. Memory only changes once the file is written.
        previous = self._containers
        self._containers = containers
        try:
            self._save()
        except PersistenceError:
            self._containers = previous
            raise

    def track(self, container_id: str, workstream_id: str, branch_name: str, repo_path: str) -> TrackedContainer:
        entry = TrackedContainer(
            container_id=container_id,
            workstream_id=workstream_id,
            branch_name=branch_name,
            repo_path=str(repo_path),
            created_at=_now_iso(),
        )
        with self._lock:
            self._commit({**self._containers, container_id: entry})
        logger.debug("Tracking container {} for branch {}", container_id[:12], branch_name)
        return entry

    def untrack(self, container_id: str) -> None:
        with self._lock:
            remaining = {cid: entry for cid, entry in self._containers.items() if cid != container_id}
            self._commit(remaining)
        logger.debug("Untracked container {}", container_id[:12])

    def clear(self) -> None:
        with self._lock:
            self._commit({})

    def get_tracked(self) -> list[TrackedContainer]:
        with self._lock:
            return list(self._containers.values())

    def get_tracked_ids(self) -> list[str]:
        with self._lock:
            return list(self._containers.keys())

    def tracked_for_branch(self, branch_name: str, repo_path: Optional[str] = None) -> list[TrackedContainer]:
        with self._lock:
            entries = [c for c in self._containers.values() if c.branch_name == branch_name]
        if repo_path is not None:
            entries = [c for c in entries if c.repo_path == str(repo_path)]
        return sorted(entries, key=lambda c: c.created_at)

    # -- heartbeat -----------------------------------------------------------

    def write_heartbeat(self, pid: Optional[int] = None) -> None:
        pid = os.getpid() if pid is None else pid
        payload = f"{pid}\n{int(time.time())}"
        try:
            _atomic_write_bytes(self.heartbeat_path, payload.encode("utf-8"))
        except OSError as exc:
            raise PersistenceError(f"failed to write heartbeat {self.heartbeat_path}: {exc}") from exc

    def remove_heartbeat(self) -> None:
        try:
            self.heartbeat_path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise PersistenceError(f"failed to remove heartbeat {self.heartbeat_path}: {exc}") from exc

    def read_heartbeat(self) -> Optional[tuple[int, int]]:
        """Return ``(pid, unix_timestamp)`` from the heartbeat file, if readable."""
        try:
            lines = self.heartbeat_path.read_text(encoding="utf-8").split()
        except OSError:
            return None
        if len(lines) < 2:
            return None
        try:
            return int(lines[0]), int(lines[1])
        except ValueError:
            return None

    def is_heartbeat_stale(self) -> bool:
        try:
            mtime = self.heartbeat_path.stat().st_mtime
        except OSError:
            # No heartbeat: the previous session crashed or never started.
            return True
        return time.time() - mtime > self.stale_after

    def get_orphaned_containers(self) -> list[TrackedContainer]:
        """Tracked containers whose owner looks dead, or [] while the heartbeat is fresh."""
        if not self.is_heartbeat_stale():
            return []
        return self.get_tracked()


class HeartbeatThread:
    """Rewrite the tracker heartbeat periodically until stopped."""

    def __init__(
        self,
        tracker: ContainerTracker,
        interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        pid: Optional[int] = None,
    ) -> None:
        self.tracker = tracker
        self.interval = interval
        self.pid = os.getpid() if pid is None else pid
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._beat()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="devcells-heartbeat")
        self._thread.start()

    def _beat(self) -> None:
        try:
            self.tracker.write_heartbeat(self.pid)
        except PersistenceError as exc:
            logger.warning("Heartbeat write failed: {}", exc)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self._beat()

    def stop(self, *, remove: bool = True) -> None:
        """Stop beating; on clean shutdown the heartbeat file is removed."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
        if remove:
            try:
                self.tracker.remove_heartbeat()
            except PersistenceError as exc:
                logger.warning("Heartbeat removal failed: {}", exc)

    def __enter__(self) -> "HeartbeatThread":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
