"""Find and remove containers that no live workstream accounts for.

A container is an orphan when it sits in this project's name space, its id
is not known to the caller, and its branch has no git worktree. The branch is
taken from the ``devcells.branch`` label and, for containers without labels,
parsed back out of the container name. Any container whose branch still has
a worktree is left alone.
"""

from __future__ import annotations

from typing import Iterable, Optional

from loguru import logger

from .constants import CONTAINER_ACTIVE_STATES, CONTAINER_STATE_RUNNING, LABEL_BRANCH, LABEL_PROJECT
from .context import OperationContext
from .errors import ContainerNotFoundError, ContainerRuntimeError
from .models import ContainerInfo, ReconcileReport
from .naming import parse_branch_from_container_name, project_prefix, sanitize_branch_name
from .runtime.interfaces import ContainerRuntime
from .tracking import ContainerTracker
from .worktrees.interfaces import WorktreeStore


def container_branch(info: ContainerInfo, prefix: str, project: str) -> Optional[str]:
    label = info.labels.get(LABEL_BRANCH)
    if label:
        return label
    return parse_branch_from_container_name(info.name, prefix, project)


class Reconciler:
    def __init__(self, runtime: ContainerRuntime, prefix: str) -> None:
        self.runtime = runtime
        self.prefix = prefix

    def _remove(self, ctx: OperationContext, info: ContainerInfo) -> None:
        if info.state in CONTAINER_ACTIVE_STATES:
            try:
                self.runtime.stop_container(ctx, info.id)
            except ContainerRuntimeError as exc:
                logger.debug("Stop {} before removal failed: {}", info.name, exc)
        try:
            self.runtime.remove_container(ctx, info.id)
        except ContainerNotFoundError:
            logger.debug("Container {} already gone", info.name)

    def _in_project(self, info: ContainerInfo, project: str) -> bool:
        label = info.labels.get(LABEL_PROJECT)
        if label is not None:
            return label == project
        # "app-web-..." also starts with the "app-" scope; only a parseable
        # name with a timestamp suffix counts for unlabeled containers.
        return parse_branch_from_container_name(info.name, self.prefix, project) is not None

    def cleanup_orphaned_containers(
        self,
        ctx: OperationContext,
        project: str,
        known_ids: Iterable[str],
        worktree_branches: Iterable[str],
    ) -> ReconcileReport:
        """Remove this project's containers that are neither known nor worktree-backed.

        Failures to remove a container are recorded in the report and never
        raised; cancellation of ``ctx`` is.
        """
        report = ReconcileReport()
        known = set(known_ids)
        branches: set[str] = set()
        for branch in worktree_branches:
            branches.add(branch)
            branches.add(sanitize_branch_name(branch))

        for info in self.runtime.list_containers(ctx, project_prefix(self.prefix, project)):
            ctx.check("reconcile containers")
            if not self._in_project(info, project):
                continue
            if info.id in known:
                report.skipped_known.append(info.name)
                continue
            branch = container_branch(info, self.prefix, project)
            if branch and (branch in branches or sanitize_branch_name(branch) in branches):
                logger.debug("Keeping {}: branch {} has a worktree", info.name, branch)
                report.skipped_worktree.append(info.name)
                continue
            try:
                self._remove(ctx, info)
            except ContainerRuntimeError as exc:
                logger.warning("Failed to remove orphaned container {}: {}", info.name, exc)
                report.failed.append(info.name)
                continue
            logger.info("Removed orphaned container {}", info.name)
            report.removed.append(info.name)

        if report.removed_count:
            logger.info("Cleaned up {} orphaned container(s) for {}", report.removed_count, project)
        return report

    def prune(self, ctx: OperationContext, project: Optional[str] = None, include_running: bool = False) -> ReconcileReport:
        """Remove stopped devcells containers, or every one with ``include_running``."""
        report = ReconcileReport()
        scope = project_prefix(self.prefix, project) if project else self.prefix
        for info in self.runtime.list_containers(ctx, scope):
            ctx.check("prune containers")
            if project and not self._in_project(info, project):
                continue
            if info.state == CONTAINER_STATE_RUNNING and not include_running:
                report.skipped_known.append(info.name)
                continue
            try:
                self._remove(ctx, info)
            except ContainerRuntimeError as exc:
                logger.warning("Failed to prune {}: {}", info.name, exc)
                report.failed.append(info.name)
                continue
            report.removed.append(info.name)
        logger.info("Pruned {} container(s)", report.removed_count)
        return report

    def startup_cleanup(
        self,
        ctx: OperationContext,
        tracker: ContainerTracker,
        worktrees: WorktreeStore,
        project: str,
        known_ids: Iterable[str] = (),
    ) -> ReconcileReport:
        """Sweep orphans at startup, recovering from a crashed previous session.

        While another process keeps the heartbeat fresh its tracked containers
        stay known. Once the heartbeat is stale those entries no longer protect
        anything; after the sweep, entries whose container is gone are dropped.
        """
        known = set(known_ids)
        crashed = tracker.is_heartbeat_stale()
        if crashed:
            orphaned = tracker.get_orphaned_containers()
            if orphaned:
                logger.warning("Previous session left {} tracked container(s); reconciling", len(orphaned))
        else:
            known.update(tracker.get_tracked_ids())
        report = self.cleanup_orphaned_containers(ctx, project, known, worktrees.worktree_branches(ctx))
        if crashed:
            live = {info.id for info in self.runtime.list_containers(ctx, self.prefix)}
            for entry in tracker.get_tracked():
                if entry.container_id not in live:
                    tracker.untrack(entry.container_id)
        return report
