from __future__ import annotations

from pathlib import Path

from devcells.context import OperationContext
from devcells.models import ContainerInfo
from devcells.reconcile import Reconciler, container_branch
from devcells.runtime.fake import FakeContainerRuntime
from devcells.tracking import ContainerTracker
from devcells.worktrees.fake import FakeWorktreeStore

PREFIX = "devcells-"
STAMP = "20240102-030405"


def _name(branch: str, project: str = "app") -> str:
    return f"{PREFIX}{project}-{branch}-{STAMP}"


def _labels(branch: str, project: str = "app") -> dict[str, str]:
    return {"devcells.managed": "true", "devcells.project": project, "devcells.branch": branch}


def test_container_branch_prefers_label() -> None:
    info = ContainerInfo(id="1", name=_name("feature-x"), state="running", labels={"devcells.branch": "feature/x"})
    assert container_branch(info, PREFIX, "app") == "feature/x"
    info.labels = {}
    assert container_branch(info, PREFIX, "app") == "feature-x"
    assert container_branch(ContainerInfo(id="2", name="unrelated", state="running"), PREFIX, "app") is None


class TestCleanupOrphanedContainers:
    def setup_method(self):
        self.runtime = FakeContainerRuntime()
        self.reconciler = Reconciler(self.runtime, PREFIX)
        self.ctx = OperationContext()

    def test_only_unknown_containers_without_worktree_are_removed(self):
        backed = self.runtime.add_container(_name("feature-x"), labels=_labels("feature/x"))
        orphan = self.runtime.add_container(_name("old"), state="exited")
        known = self.runtime.add_container(_name("known"), labels=_labels("known"))
        other = self.runtime.add_container(_name("main", project="app-web"), labels=_labels("main", "app-web"))

        report = self.reconciler.cleanup_orphaned_containers(self.ctx, "app", [known], {"feature/x"})

        assert report.removed == [_name("old")]
        assert report.skipped_known == [_name("known")]
        assert report.skipped_worktree == [_name("feature-x")]
        assert report.failed == []
        assert set(self.runtime.containers) == {backed, known, other}
        assert orphan not in self.runtime.containers

    def test_unlabeled_container_matches_sanitized_branch(self):
        cid = self.runtime.add_container(_name("feature-y"))
        report = self.reconciler.cleanup_orphaned_containers(self.ctx, "app", [], {"feature/y"})
        assert report.skipped_worktree == [_name("feature-y")]
        assert cid in self.runtime.containers

    def test_unparseable_unlabeled_name_is_ignored(self):
        cid = self.runtime.add_container(f"{PREFIX}app-scratch")
        report = self.reconciler.cleanup_orphaned_containers(self.ctx, "app", [], set())
        assert report.removed_count == 0
        assert cid in self.runtime.containers

    def test_running_container_is_stopped_first(self):
        cid = self.runtime.add_container(_name("gone"), labels=_labels("gone"))
        self.reconciler.cleanup_orphaned_containers(self.ctx, "app", [], set())
        ops = [op for op, target in self.runtime.calls if target == cid]
        assert ops == ["stop", "remove"]

    def test_removal_failure_is_reported(self):
        cid = self.runtime.add_container(_name("stuck"), state="exited", labels=_labels("stuck"))
        self.runtime.fail_remove = {cid}
        report = self.reconciler.cleanup_orphaned_containers(self.ctx, "app", [], set())
        assert report.failed == [_name("stuck")]
        assert report.removed_count == 0
        assert report.to_dict()["removed_count"] == 0


class TestPrune:
    def setup_method(self):
        self.runtime = FakeContainerRuntime()
        self.reconciler = Reconciler(self.runtime, PREFIX)
        self.ctx = OperationContext()

    def test_prune_keeps_running_by_default(self):
        running = self.runtime.add_container(_name("a"), labels=_labels("a"))
        self.runtime.add_container(_name("b"), state="exited", labels=_labels("b"))
        report = self.reconciler.prune(self.ctx, "app")
        assert report.removed == [_name("b")]
        assert list(self.runtime.containers) == [running]

    def test_prune_all(self):
        self.runtime.add_container(_name("a"), labels=_labels("a"))
        self.runtime.add_container(_name("b", project="web"), state="exited", labels=_labels("b", "web"))
        report = self.reconciler.prune(self.ctx, include_running=True)
        assert report.removed_count == 2
        assert self.runtime.containers == {}

    def test_prune_leaves_other_projects(self):
        other = self.runtime.add_container(_name("b", project="web"), state="exited", labels=_labels("b", "web"))
        self.reconciler.prune(self.ctx, "app", include_running=True)
        assert other in self.runtime.containers


class TestStartupCleanup:
    def setup_method(self):
        self.runtime = FakeContainerRuntime()
        self.reconciler = Reconciler(self.runtime, PREFIX)
        self.store = FakeWorktreeStore()
        self.ctx = OperationContext()

    def test_fresh_heartbeat_protects_tracked_containers(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        cid = self.runtime.add_container(_name("busy"), labels=_labels("busy"))
        tracker.track(cid, "ws-1", "busy", "/repo/app")
        tracker.write_heartbeat()

        report = self.reconciler.startup_cleanup(self.ctx, tracker, self.store, "app")

        assert report.skipped_known == [_name("busy")]
        assert cid in self.runtime.containers
        assert tracker.get_tracked_ids() == [cid]

    def test_stale_heartbeat_releases_tracked_containers(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        dead = self.runtime.add_container(_name("dead"), labels=_labels("dead"))
        kept = self.runtime.add_container(_name("live"), labels=_labels("live"))
        self.store.add_worktree(str(tmp_path / "wt" / "live"), "live")
        tracker.track(dead, "ws-1", "dead", "/repo/app")
        tracker.track(kept, "ws-2", "live", "/repo/app")

        report = self.reconciler.startup_cleanup(self.ctx, tracker, self.store, "app")

        assert report.removed == [_name("dead")]
        assert report.skipped_worktree == [_name("live")]
        assert tracker.get_tracked_ids() == [kept]

    def test_extra_known_ids(self, tmp_path: Path):
        tracker = ContainerTracker(tmp_path)
        cid = self.runtime.add_container(_name("mine"), labels=_labels("mine"))
        report = self.reconciler.startup_cleanup(self.ctx, tracker, self.store, "app", known_ids=[cid])
        assert report.skipped_known == [_name("mine")]
