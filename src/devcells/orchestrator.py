"""Workstream lifecycle: worktree + container create, destroy, rebuild, pause.

The orchestrator is the only writer of ``Workstream.container_id`` and
``Workstream.worktree_path``. Both are set after the whole operation
succeeds; a failed create leaves the workstream untouched and rolls the
worktree back.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from .build_lock import BuildLockRegistry
from .config import Settings, load_security_config, load_settings, save_project_security_config
from .constants import (
    CLEANUP_TIMEOUT_SECONDS,
    LABEL_BRANCH,
    LABEL_MANAGED,
    LABEL_PROJECT,
    LABEL_WORKSTREAM,
    WORKSPACE_MOUNT_TARGET,
)
from .context import OperationContext
from .errors import (
    ContainerNotFoundError,
    ContainerRuntimeError,
    DestroyError,
    GitCommandError,
    PersistenceError,
    UntrackedCopyError,
    WorkstreamStateError,
    WorktreeCreationError,
)
from .fallback import FallbackResult, TierFallback
from .images import ImageManager
from .models import (
    BranchConflict,
    ContainerConfig,
    CreateOptions,
    CreateResult,
    DestroyOptions,
    Mount,
    Workstream,
)
from .naming import container_name, project_name, sanitize_branch_name
from .runtime.interfaces import ContainerRuntime
from .security import SecurityConfig, SecurityRelaxation, merge_security_config
from .tracking import ContainerTracker
from .worktrees.interfaces import WorktreeStore


class Orchestrator:
    def __init__(
        self,
        runtime: ContainerRuntime,
        worktrees: WorktreeStore,
        repo_path: Path | str,
        settings: Optional[Settings] = None,
        tracker: Optional[ContainerTracker] = None,
        build_locks: Optional[BuildLockRegistry] = None,
    ) -> None:
        self.runtime = runtime
        self.worktrees = worktrees
        self.repo_path = Path(repo_path)
        self.settings = settings or load_settings()
        self.tracker = tracker
        self.project = project_name(self.repo_path)
        self.images = ImageManager(runtime, build_locks or BuildLockRegistry())
        self.fallback = TierFallback(runtime)

    def worktree_path_for(self, branch_name: str) -> Path:
        return self.settings.worktree_base_dir / sanitize_branch_name(branch_name)

    # -- helpers ---------------------------------------------------------------

    def _cleanup_context(self) -> OperationContext:
        # Rollback must still run when the caller's context is what failed.
        return OperationContext(CLEANUP_TIMEOUT_SECONDS)

    def _cleanup_worktree(self, path: Path) -> None:
        ctx = self._cleanup_context()
        try:
            self.worktrees.remove_worktree(ctx, str(path))
        except GitCommandError as exc:
            logger.debug("Worktree rollback for {} failed: {}", path, exc)
        shutil.rmtree(path, ignore_errors=True)

    def _clear_orphaned_worktree_dir(self, ctx: OperationContext, branch_name: str, path: Path) -> None:
        if not path.exists():
            return
        # A git failure propagates here; the directory is only removed when
        # git positively does not know it.
        target = path.resolve()
        for registered in self.worktrees.worktree_list(ctx):
            if Path(registered).resolve() == target:
                raise WorktreeCreationError(
                    f"cannot create worktree for {branch_name}: {path} is already a git worktree"
                )
        logger.info("Removing orphaned worktree directory {}", path)
        try:
            self.worktrees.remove_worktree(ctx, str(path))
        except GitCommandError as exc:
            logger.debug("git does not know {}: {}", path, exc)
        shutil.rmtree(path, ignore_errors=True)

    def _copy_untracked(self, files: list[str], dest: Path) -> None:
        for rel in files:
            rel_path = Path(rel)
            if rel_path.is_absolute() or ".." in rel_path.parts:
                raise UntrackedCopyError(f"refusing to copy {rel}: path leaves the repository")
            src = self.repo_path / rel_path
            dst = dest / rel_path
            try:
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(src, dst)
                shutil.copymode(src, dst)
            except OSError as exc:
                raise UntrackedCopyError(f"copy {rel}: {exc}") from exc
        if files:
            logger.debug("Copied {} untracked file(s) into {}", len(files), dest)

    def _resolve_security(self, opts: CreateOptions) -> SecurityConfig:
        cfg = load_security_config(self.repo_path, self.settings)
        if opts.security is not None:
            cfg = merge_security_config(cfg, opts.security)
        return cfg

    def _container_config(self, ws: Workstream, worktree_path: Path, opts: CreateOptions) -> ContainerConfig:
        mounts = [Mount(source=str(worktree_path), target=WORKSPACE_MOUNT_TARGET)]
        git_dir = self.worktrees.git_dir()
        if git_dir:
            # Worktree .git files point at this absolute host path.
            mounts.append(Mount(source=git_dir, target=git_dir))
        mounts.extend(opts.config_mounts)
        mounts.extend(opts.extra_mounts)
        return ContainerConfig(
            name=container_name(self.settings.container_prefix, self.project, ws.branch_name),
            image=opts.image_name,
            mounts=mounts,
            env=dict(opts.env),
            labels={
                LABEL_MANAGED: "true",
                LABEL_PROJECT: self.project,
                LABEL_BRANCH: ws.branch_name,
                LABEL_WORKSTREAM: ws.id,
            },
            cpus=opts.cpus or self.settings.default_cpus,
            memory_bytes=opts.memory_bytes or self.settings.default_memory_bytes,
            security=self._resolve_security(opts),
        )

    def _track(self, ws: Workstream, container_id: str) -> None:
        if self.tracker is None:
            return
        try:
            self.tracker.track(container_id, ws.id, ws.branch_name, str(self.repo_path))
        except PersistenceError as exc:
            logger.warning("Failed to track container {}: {}", container_id[:12], exc)

    def _untrack(self, container_id: str) -> None:
        if self.tracker is None:
            return
        try:
            self.tracker.untrack(container_id)
        except PersistenceError as exc:
            logger.warning("Failed to untrack container {}: {}", container_id[:12], exc)

    def _report_relaxation(self, result: FallbackResult, opts: CreateOptions) -> Optional[SecurityRelaxation]:
        if not result.relaxed:
            return None
        relaxation = SecurityRelaxation(
            original_tier=result.original_tier,
            final_tier=result.security.tier,
            attempts=list(result.attempts),
        )
        if not opts.persist_relaxation:
            return relaxation
        try:
            path = save_project_security_config(self.repo_path, result.security)
        except PersistenceError as exc:
            logger.warning("Could not save relaxed security tier {}: {}", result.security.tier.value, exc)
            return relaxation
        relaxation.config_saved = True
        relaxation.config_path = str(path)
        logger.warning(
            "Security relaxed from {} to {}; saved to {}",
            result.original_tier.value,
            result.security.tier.value,
            path,
        )
        return relaxation

    def _launch(self, ctx: OperationContext, ws: Workstream, worktree_path: Path, opts: CreateOptions) -> tuple[ContainerConfig, FallbackResult]:
        self.images.ensure_image(ctx, opts.image_name, opts.build)
        cfg = self._container_config(ws, worktree_path, opts)
        return cfg, self.fallback.run(ctx, cfg)

    # -- lifecycle -------------------------------------------------------------

    def create_workstream(self, ctx: OperationContext, ws: Workstream, opts: CreateOptions) -> CreateResult:
        """Create the worktree and container for ``ws``.

        Steps: optional base-branch update, worktree creation (new or existing
        branch), untracked-file copy, image check/build, container create and
        start with tier fallback. Any failure after the worktree exists removes
        it again before the error propagates.
        """
        if not ws.branch_name:
            raise WorkstreamStateError("workstream has no branch name")

        if opts.update_main and not opts.use_existing_branch:
            try:
                self.worktrees.update_main_branch(ctx)
            except GitCommandError as exc:
                logger.warning("Could not update base branch: {}", exc)

        worktree_path = self.worktree_path_for(ws.branch_name)
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        self._clear_orphaned_worktree_dir(ctx, ws.branch_name, worktree_path)

        if opts.use_existing_branch:
            self.worktrees.create_worktree_from_existing(ctx, str(worktree_path), ws.branch_name)
        else:
            self.worktrees.create_worktree(ctx, str(worktree_path), ws.branch_name)
        logger.info("Created worktree {} for branch {}", worktree_path, ws.branch_name)

        try:
            if opts.copy_untracked and not opts.use_existing_branch:
                self._copy_untracked(opts.untracked_files, worktree_path)
            cfg, result = self._launch(ctx, ws, worktree_path, opts)
        except Exception:
            logger.error("Creating workstream {} failed; removing worktree {}", ws.branch_name, worktree_path)
            self._cleanup_worktree(worktree_path)
            raise

        ws.worktree_path = str(worktree_path)
        ws.container_id = result.container_id
        self._track(ws, result.container_id)
        logger.info("Workstream {} running in {} ({})", ws.branch_name, cfg.name, result.container_id[:12])
        return CreateResult(
            container_id=result.container_id,
            container_name=cfg.name,
            worktree_path=str(worktree_path),
            security_relaxation=self._report_relaxation(result, opts),
        )

    def destroy_workstream(self, ctx: OperationContext, ws: Workstream, opts: Optional[DestroyOptions] = None) -> None:
        """Tear down ``ws``, attempting every step even after a failure.

        Raises:
            DestroyError: Listing each step that failed.
        """
        opts = opts or DestroyOptions()
        errors: list[Exception] = []

        if ws.container_id:
            container_id = ws.container_id
            try:
                self.runtime.stop_container(ctx, container_id)
            except ContainerRuntimeError as exc:
                logger.debug("Stop {} ignored: {}", container_id[:12], exc)
            removed = False
            try:
                self.runtime.remove_container(ctx, container_id)
                removed = True
            except ContainerNotFoundError:
                removed = True
            except ContainerRuntimeError as exc:
                errors.append(exc)
            if removed:
                self._untrack(container_id)
                ws.container_id = ""
                logger.info("Removed container {} for {}", container_id[:12], ws.branch_name)

        if not opts.keep_worktree:
            worktree_path = ws.worktree_path
            if not worktree_path:
                worktree_path, _ = self.worktrees.worktree_exists_for_branch(ctx, ws.branch_name)
            if worktree_path:
                try:
                    self.worktrees.remove_worktree(ctx, worktree_path)
                    logger.info("Removed worktree {}", worktree_path)
                except GitCommandError as exc:
                    errors.append(exc)

        if opts.delete_branch:
            try:
                self.worktrees.delete_branch(ctx, ws.branch_name)
            except GitCommandError as exc:
                errors.append(exc)

        if opts.delete_remote_branch:
            try:
                self.worktrees.delete_remote_branch(ctx, ws.branch_name)
            except GitCommandError as exc:
                errors.append(exc)

        if errors:
            logger.error("Destroy of {} had {} error(s)", ws.branch_name, len(errors))
            raise DestroyError(errors)

    def rebuild_workstream(self, ctx: OperationContext, ws: Workstream, opts: CreateOptions) -> CreateResult:
        """Replace the container of ``ws``; worktree and branch are kept."""
        if not ws.worktree_path:
            raise WorkstreamStateError(f"workstream {ws.branch_name} has no worktree to rebuild against")
        self.destroy_workstream(ctx, ws, DestroyOptions(keep_worktree=True))
        worktree_path = Path(ws.worktree_path)
        cfg, result = self._launch(ctx, ws, worktree_path, opts)
        ws.container_id = result.container_id
        self._track(ws, result.container_id)
        logger.info("Rebuilt workstream {} as {} ({})", ws.branch_name, cfg.name, result.container_id[:12])
        return CreateResult(
            container_id=result.container_id,
            container_name=cfg.name,
            worktree_path=str(worktree_path),
            security_relaxation=self._report_relaxation(result, opts),
        )

    def pause_workstream(self, ctx: OperationContext, ws: Workstream) -> None:
        if not ws.container_id:
            raise WorkstreamStateError("workstream has no container")
        self.runtime.pause_container(ctx, ws.container_id)
        logger.info("Paused {}", ws.branch_name)

    def resume_workstream(self, ctx: OperationContext, ws: Workstream) -> None:
        if not ws.container_id:
            raise WorkstreamStateError("workstream has no container")
        self.runtime.unpause_container(ctx, ws.container_id)
        logger.info("Resumed {}", ws.branch_name)

    def check_branch_conflict(self, ctx: OperationContext, branch_name: str) -> Optional[BranchConflict]:
        """Describe an existing branch or worktree named ``branch_name``, if any."""
        existing_path, has_worktree = self.worktrees.worktree_exists_for_branch(ctx, branch_name)
        if has_worktree:
            return BranchConflict(
                branch_name=branch_name,
                has_worktree=True,
                worktree_path=existing_path,
                branch_info=f"Active worktree at: {existing_path}\n{self._branch_info(ctx, branch_name)}",
            )
        if self.worktrees.branch_exists(ctx, branch_name):
            return BranchConflict(
                branch_name=branch_name,
                has_worktree=False,
                branch_info=self._branch_info(ctx, branch_name),
            )
        return None

    def _branch_info(self, ctx: OperationContext, branch_name: str) -> str:
        try:
            return self.worktrees.branch_info(ctx, branch_name)
        except GitCommandError as exc:
            logger.debug("branch info for {} unavailable: {}", branch_name, exc)
            return ""
