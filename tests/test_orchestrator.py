from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from devcells.config import Settings, project_config_path
from devcells.context import OperationContext
from devcells.errors import (
    ContainerCreateError,
    ContainerStartError,
    DestroyError,
    GitCommandError,
    ImageUnavailableError,
    OperationCancelled,
    UntrackedCopyError,
    WorkstreamStateError,
    WorktreeCreationError,
)
from devcells.models import BuildSpec, CreateOptions, DestroyOptions, Mount, Workstream
from devcells.orchestrator import Orchestrator
from devcells.runtime.fake import FakeContainerRuntime
from devcells.security import SecurityConfig, SecurityTier
from devcells.tracking import ContainerTracker
from devcells.worktrees.fake import FakeWorktreeStore


class _Env:
    def __init__(self, tmp_path: Path, branches: list[str] | None = None) -> None:
        self.repo = tmp_path / "app"
        self.repo.mkdir()
        self.settings = Settings(data_dir=tmp_path / "home", worktree_base_dir=tmp_path / "worktrees")
        self.runtime = FakeContainerRuntime(images={"dev:latest"})
        self.store = FakeWorktreeStore(branches=branches, git_dir=str(self.repo / ".git"))
        self.tracker = ContainerTracker(self.settings.data_dir)
        self.orch = Orchestrator(self.runtime, self.store, self.repo, settings=self.settings, tracker=self.tracker)
        self.ctx = OperationContext()

    def create(self, branch: str = "feature/x", **opts) -> tuple[Workstream, object]:
        ws = Workstream(branch_name=branch)
        opts.setdefault("image_name", "dev:latest")
        result = self.orch.create_workstream(self.ctx, ws, CreateOptions(**opts))
        return ws, result


class TestCreateWorkstream:
    def test_success_sets_workstream_fields(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, result = env.create()
        assert ws.worktree_path.endswith("feature-x")
        assert Path(ws.worktree_path).is_dir()
        assert ws.container_id == result.container_id
        assert result.container_name.startswith("devcells-app-feature-x-")
        assert result.security_relaxation is None
        assert env.runtime.get_container_state(env.ctx, ws.container_id) == "running"
        assert env.tracker.get_tracked_ids() == [ws.container_id]

    def test_container_config_labels_mounts_and_limits(self, tmp_path: Path):
        env = _Env(tmp_path)
        extra = Mount(source="/data", target="/data", read_only=True)
        ws, _ = env.create(extra_mounts=[extra], env={"A": "1"})
        cfg = env.runtime.created_configs[0]
        assert cfg.labels == {
            "devcells.managed": "true",
            "devcells.project": "app",
            "devcells.branch": "feature/x",
            "devcells.workstream": ws.id,
        }
        assert cfg.mounts[0] == Mount(source=ws.worktree_path, target="/workspace")
        assert cfg.mounts[1] == Mount(source=str(env.repo / ".git"), target=str(env.repo / ".git"))
        assert cfg.mounts[-1] == extra
        assert cfg.env == {"A": "1"}
        assert cfg.cpus == 2.0
        assert cfg.memory_bytes == 4 * 1024**3

    def test_explicit_limits_win(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.create(cpus=0.5, memory_bytes=512 * 1024**2)
        cfg = env.runtime.created_configs[0]
        assert cfg.cpus == 0.5
        assert cfg.memory_bytes == 512 * 1024**2

    def test_empty_branch_rejected(self, tmp_path: Path):
        env = _Env(tmp_path)
        with pytest.raises(WorkstreamStateError):
            env.orch.create_workstream(env.ctx, Workstream(branch_name=""), CreateOptions(image_name="dev:latest"))

    def test_hardened_rejection_relaxes_and_saves(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.runtime.reject_create_tiers = {SecurityTier.HARDENED}
        ws, result = env.create(security=SecurityConfig(tier=SecurityTier.HARDENED))
        relaxation = result.security_relaxation
        assert relaxation is not None
        assert relaxation.original_tier is SecurityTier.HARDENED
        assert relaxation.final_tier is SecurityTier.MODERATE
        assert relaxation.config_saved is True
        assert relaxation.config_path == str(project_config_path(env.repo))
        saved = yaml.safe_load(project_config_path(env.repo).read_text())
        assert saved["security"]["tier"] == "moderate"
        assert ws.container_id

    def test_relaxation_not_saved_when_disabled(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.runtime.reject_create_tiers = {SecurityTier.HARDENED}
        _, result = env.create(security=SecurityConfig(tier=SecurityTier.HARDENED), persist_relaxation=False)
        assert result.security_relaxation.config_saved is False
        assert not project_config_path(env.repo).exists()

    def test_save_failure_does_not_fail_create(self, tmp_path: Path):
        env = _Env(tmp_path)
        (env.repo / ".devcells").write_text("not a directory")
        env.runtime.reject_create_tiers = {SecurityTier.HARDENED}
        ws, result = env.create(security=SecurityConfig(tier=SecurityTier.HARDENED))
        assert result.security_relaxation.config_saved is False
        assert result.security_relaxation.config_path is None
        assert ws.container_id

    def test_project_config_tier_is_used(self, tmp_path: Path):
        env = _Env(tmp_path)
        path = project_config_path(env.repo)
        path.parent.mkdir(parents=True)
        path.write_text("security:\n  tier: compat\n")
        env.create()
        assert env.runtime.created_configs[0].security.tier is SecurityTier.COMPAT

    def test_auto_relax_off_rolls_back(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.runtime.reject_create_tiers = {SecurityTier.HARDENED}
        ws = Workstream(branch_name="feature/x")
        opts = CreateOptions(image_name="dev:latest", security=SecurityConfig(tier=SecurityTier.HARDENED, auto_relax=False))
        with pytest.raises(ContainerCreateError):
            env.orch.create_workstream(env.ctx, ws, opts)
        assert ws.container_id == ""
        assert ws.worktree_path == ""
        assert env.store.worktrees == {}
        assert not env.orch.worktree_path_for("feature/x").exists()
        assert env.tracker.get_tracked() == []

    def test_every_tier_failing_rolls_back(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.runtime.reject_start_tiers = set(SecurityTier)
        with pytest.raises(ContainerStartError):
            env.create()
        assert env.runtime.containers == {}
        assert env.store.worktrees == {}

    def test_missing_image_without_recipe(self, tmp_path: Path):
        env = _Env(tmp_path)
        with pytest.raises(ImageUnavailableError):
            env.create(image_name="missing:latest")
        assert env.store.worktrees == {}
        assert env.runtime.calls_for("create") == []

    def test_missing_image_is_built(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create(image_name="fresh:1", build=BuildSpec(dockerfile="Dockerfile", context=str(env.repo)))
        assert env.runtime.build_counts == {"fresh:1": 1}
        assert ws.container_id

    def test_copy_untracked_files(self, tmp_path: Path):
        env = _Env(tmp_path)
        (env.repo / ".env").write_text("SECRET=1\n")
        (env.repo / "conf").mkdir()
        (env.repo / "conf" / "local.yaml").write_text("a: 1\n")
        ws, _ = env.create(copy_untracked=True, untracked_files=[".env", "conf/local.yaml"])
        assert (Path(ws.worktree_path) / ".env").read_text() == "SECRET=1\n"
        assert (Path(ws.worktree_path) / "conf" / "local.yaml").read_text() == "a: 1\n"

    def test_copy_untracked_failure_rolls_back(self, tmp_path: Path):
        env = _Env(tmp_path)
        with pytest.raises(UntrackedCopyError):
            env.create(copy_untracked=True, untracked_files=["missing.txt"])
        assert env.store.worktrees == {}
        assert env.runtime.containers == {}

    def test_copy_untracked_rejects_escaping_paths(self, tmp_path: Path):
        env = _Env(tmp_path)
        with pytest.raises(UntrackedCopyError):
            env.create(copy_untracked=True, untracked_files=["../outside"])

    def test_existing_branch(self, tmp_path: Path):
        env = _Env(tmp_path, branches=["feature/x"])
        env.store.add_commit("feature/x", "wip")
        ws, _ = env.create(use_existing_branch=True, update_main=True, copy_untracked=True, untracked_files=["nope"])
        assert ("create_worktree_from_existing", "feature/x") in env.store.calls
        assert env.store.main_updates == 0
        assert ws.container_id

    def test_new_branch_that_exists_fails(self, tmp_path: Path):
        env = _Env(tmp_path, branches=["feature/x"])
        with pytest.raises(WorktreeCreationError):
            env.create()
        assert env.runtime.containers == {}

    def test_update_main_failure_is_not_fatal(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.store.fail_update_main = True
        ws, _ = env.create(update_main=True)
        assert ws.container_id

    def test_orphaned_worktree_directory_is_cleared(self, tmp_path: Path):
        env = _Env(tmp_path)
        stale = env.orch.worktree_path_for("feature/x")
        stale.mkdir(parents=True)
        (stale / "leftover").write_text("x")
        ws, _ = env.create()
        assert Path(ws.worktree_path).is_dir()
        assert not (stale / "leftover").exists()

    def test_colliding_branch_keeps_live_worktree(self, tmp_path: Path):
        env = _Env(tmp_path)
        first, _ = env.create("feature/x")
        unsaved = Path(first.worktree_path) / "unsaved.txt"
        unsaved.write_text("work in progress")

        ws = Workstream(branch_name="feature-x")
        with pytest.raises(WorktreeCreationError):
            env.orch.create_workstream(env.ctx, ws, CreateOptions(image_name="dev:latest"))

        assert unsaved.read_text() == "work in progress"
        assert env.store.worktree_exists_for_branch(env.ctx, "feature/x") == (first.worktree_path, True)
        assert list(env.runtime.containers) == [first.container_id]
        assert ws.worktree_path == ""

    def test_leftover_directory_kept_when_git_listing_fails(self, tmp_path: Path):
        env = _Env(tmp_path)
        leftover = env.orch.worktree_path_for("feature/x")
        leftover.mkdir(parents=True)
        (leftover / "notes.txt").write_text("keep")
        env.store.fail_list = True

        with pytest.raises(GitCommandError):
            env.create()

        assert (leftover / "notes.txt").read_text() == "keep"
        assert env.runtime.calls_for("create") == []

    def test_hardened_start_failure_relaxes_to_moderate(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.runtime.reject_start_tiers = {SecurityTier.HARDENED}
        ws, result = env.create("feature/x", security=SecurityConfig(tier=SecurityTier.HARDENED))

        assert ws.worktree_path.endswith("feature-x")
        assert result.security_relaxation.final_tier is SecurityTier.MODERATE
        assert result.security_relaxation.config_saved is True
        assert len(env.runtime.calls_for("remove")) == 1
        assert list(env.runtime.containers) == [ws.container_id]
        assert env.runtime.containers[ws.container_id].config.security.tier is SecurityTier.MODERATE

    def test_cancellation_after_create_removes_container(self, tmp_path: Path):
        env = _Env(tmp_path)

        def cancel_during_create(cfg):
            env.ctx.cancel("user interrupt")
            return None

        env.runtime.fail_create = cancel_during_create
        ws = Workstream(branch_name="feature/y")
        with pytest.raises(OperationCancelled):
            env.orch.create_workstream(env.ctx, ws, CreateOptions(image_name="dev:latest"))

        assert env.runtime.containers == {}
        assert env.store.worktrees == {}
        assert ws.container_id == ""
        assert env.tracker.get_tracked() == []

    def test_cancelled_context(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.ctx.cancel("user interrupt")
        ws = Workstream(branch_name="feature/x")
        with pytest.raises(OperationCancelled):
            env.orch.create_workstream(env.ctx, ws, CreateOptions(image_name="dev:latest"))
        assert ws.container_id == ""
        assert env.runtime.containers == {}


class TestDestroyWorkstream:
    def test_removes_everything(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create()
        path = ws.worktree_path
        env.orch.destroy_workstream(env.ctx, ws, DestroyOptions(delete_branch=True, delete_remote_branch=True))
        assert env.runtime.containers == {}
        assert ws.container_id == ""
        assert env.store.worktrees == {}
        assert not Path(path).exists()
        assert "feature/x" not in env.store.branches
        assert env.store.remote_deleted == ["feature/x"]
        assert env.tracker.get_tracked() == []

    def test_worktree_failure_still_removes_container(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create()
        env.store.fail_remove = {ws.worktree_path}
        with pytest.raises(DestroyError) as excinfo:
            env.orch.destroy_workstream(env.ctx, ws)
        assert len(excinfo.value.errors) == 1
        assert env.runtime.containers == {}
        assert ws.container_id == ""
        assert env.tracker.get_tracked() == []

    def test_container_removal_failure_keeps_id(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create()
        container_id = ws.container_id
        env.runtime.fail_remove = {container_id}
        with pytest.raises(DestroyError):
            env.orch.destroy_workstream(env.ctx, ws)
        assert ws.container_id == container_id
        assert env.store.worktrees == {}
        assert env.tracker.get_tracked_ids() == [container_id]

    def test_already_removed_container_and_stop_failure(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create()
        env.runtime.fail_stop = {ws.container_id}
        env.runtime.containers.clear()
        env.orch.destroy_workstream(env.ctx, ws)
        assert ws.container_id == ""

    def test_keep_worktree(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create()
        env.orch.destroy_workstream(env.ctx, ws, DestroyOptions(keep_worktree=True))
        assert Path(ws.worktree_path).is_dir()
        assert list(env.store.worktrees.values()) == ["feature/x"]

    def test_worktree_looked_up_by_branch(self, tmp_path: Path):
        env = _Env(tmp_path)
        created, _ = env.create()
        ws = Workstream(branch_name="feature/x", container_id=created.container_id)
        env.orch.destroy_workstream(env.ctx, ws)
        assert env.store.worktrees == {}

    def test_branch_delete_failure_collected(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create()
        env.store.fail_delete_branch = {"feature/x"}
        with pytest.raises(DestroyError):
            env.orch.destroy_workstream(env.ctx, ws, DestroyOptions(delete_branch=True, delete_remote_branch=True))
        assert env.store.remote_deleted == ["feature/x"]


class TestRebuildAndPause:
    def test_rebuild_replaces_container(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, first = env.create()
        result = env.orch.rebuild_workstream(env.ctx, ws, CreateOptions(image_name="dev:latest"))
        assert result.container_id != first.container_id
        assert ws.container_id == result.container_id
        assert list(env.runtime.containers) == [result.container_id]
        assert Path(ws.worktree_path).is_dir()
        assert env.tracker.get_tracked_ids() == [result.container_id]

    def test_rebuild_requires_worktree(self, tmp_path: Path):
        env = _Env(tmp_path)
        with pytest.raises(WorkstreamStateError):
            env.orch.rebuild_workstream(env.ctx, Workstream(branch_name="x"), CreateOptions(image_name="dev:latest"))

    def test_pause_and_resume(self, tmp_path: Path):
        env = _Env(tmp_path)
        ws, _ = env.create()
        env.orch.pause_workstream(env.ctx, ws)
        assert env.runtime.get_container_state(env.ctx, ws.container_id) == "paused"
        env.orch.resume_workstream(env.ctx, ws)
        assert env.runtime.get_container_state(env.ctx, ws.container_id) == "running"

    def test_pause_without_container(self, tmp_path: Path):
        env = _Env(tmp_path)
        with pytest.raises(WorkstreamStateError):
            env.orch.pause_workstream(env.ctx, Workstream(branch_name="x"))
        with pytest.raises(WorkstreamStateError):
            env.orch.resume_workstream(env.ctx, Workstream(branch_name="x"))


class TestBranchConflict:
    def test_no_conflict(self, tmp_path: Path):
        env = _Env(tmp_path)
        assert env.orch.check_branch_conflict(env.ctx, "feature/new") is None

    def test_branch_without_worktree(self, tmp_path: Path):
        env = _Env(tmp_path, branches=["feature/old"])
        conflict = env.orch.check_branch_conflict(env.ctx, "feature/old")
        assert conflict is not None
        assert conflict.has_worktree is False
        assert conflict.branch_info == "No commits ahead of main"

    def test_branch_with_worktree(self, tmp_path: Path):
        env = _Env(tmp_path)
        env.store.add_worktree("/wt/feature-old", "feature/old")
        env.store.add_commit("feature/old", "abc123 add thing")
        conflict = env.orch.check_branch_conflict(env.ctx, "feature/old")
        assert conflict.has_worktree is True
        assert conflict.worktree_path == "/wt/feature-old"
        assert conflict.branch_info.startswith("Active worktree at: /wt/feature-old\nCommits (1):")
