"""In-memory worktree store with failure injection."""

from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import Optional

from ..context import OperationContext
from ..errors import GitCommandError, WorktreeCreationError
from .interfaces import WorktreeStore


class FakeWorktreeStore(WorktreeStore):
    """Track branches and worktrees in dictionaries.

    Worktree directories are created on disk so callers can copy files into
    them. ``fail_create`` / ``fail_remove`` / ``fail_delete_branch`` hold
    branch names or paths whose operation raises. ``fail_list`` makes
    ``worktree_list`` raise as a broken git would.
    """

    def __init__(self, branches: Optional[list[str]] = None, base_branch: str = "main", git_dir: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self.base_branch = base_branch
        self.branches: dict[str, list[str]] = {base_branch: []}
        for name in branches or ():
            self.branches.setdefault(name, [])
        self.worktrees: dict[str, str] = {}
        self.untracked: list[str] = []
        self.remote_deleted: list[str] = []
        self.main_updates = 0
        self.fail_create: set[str] = set()
        self.fail_remove: set[str] = set()
        self.fail_delete_branch: set[str] = set()
        self.fail_update_main = False
        self.fail_list = False
        self.calls: list[tuple[str, str]] = []
        self._git_dir = git_dir

    def _record(self, op: str, target: str) -> None:
        with self._lock:
            self.calls.append((op, target))

    def add_worktree(self, path: str, branch_name: str) -> None:
        with self._lock:
            self.branches.setdefault(branch_name, [])
            self.worktrees[str(path)] = branch_name

    def add_commit(self, branch_name: str, message: str) -> None:
        with self._lock:
            self.branches.setdefault(branch_name, []).append(message)

    def git_dir(self) -> Optional[str]:
        return self._git_dir

    def create_worktree(self, ctx: OperationContext, path: str, branch_name: str) -> None:
        ctx.check("git worktree add")
        self._record("create_worktree", branch_name)
        if branch_name in self.fail_create:
            raise WorktreeCreationError(f"git create worktree: injected failure for {branch_name}")
        with self._lock:
            if branch_name in self.branches:
                raise WorktreeCreationError(f"git create worktree: a branch named '{branch_name}' already exists")
            self.branches[branch_name] = []
            self.worktrees[str(path)] = branch_name
        Path(path).mkdir(parents=True, exist_ok=True)

    def create_worktree_from_existing(self, ctx: OperationContext, path: str, branch_name: str) -> None:
        ctx.check("git worktree add")
        self._record("create_worktree_from_existing", branch_name)
        if branch_name in self.fail_create:
            raise WorktreeCreationError(f"git create worktree from existing: injected failure for {branch_name}")
        with self._lock:
            if branch_name not in self.branches:
                raise WorktreeCreationError(f"git create worktree from existing: invalid reference: {branch_name}")
            if branch_name in self.worktrees.values():
                raise WorktreeCreationError(f"git create worktree from existing: '{branch_name}' is already checked out")
            self.worktrees[str(path)] = branch_name
        Path(path).mkdir(parents=True, exist_ok=True)

    def remove_worktree(self, ctx: OperationContext, path: str) -> None:
        ctx.check("git worktree remove")
        self._record("remove_worktree", str(path))
        if str(path) in self.fail_remove:
            raise GitCommandError(["worktree", "remove", "--force", str(path)], 128, "injected failure")
        with self._lock:
            known = self.worktrees.pop(str(path), None)
        if known is None:
            raise GitCommandError(["worktree", "remove", "--force", str(path)], 128, f"'{path}' is not a working tree")
        shutil.rmtree(path, ignore_errors=True)

    def worktree_list(self, ctx: OperationContext) -> list[str]:
        if self.fail_list:
            raise GitCommandError(["worktree", "list", "--porcelain"], 128, "not a git repository")
        with self._lock:
            return list(self.worktrees)

    def worktree_exists_for_branch(self, ctx: OperationContext, branch_name: str) -> tuple[str, bool]:
        with self._lock:
            for path, branch in self.worktrees.items():
                if branch == branch_name:
                    return path, True
        return "", False

    def worktree_branches(self, ctx: OperationContext) -> set[str]:
        with self._lock:
            return set(self.worktrees.values())

    def branch_exists(self, ctx: OperationContext, branch_name: str) -> bool:
        with self._lock:
            return branch_name in self.branches

    def delete_branch(self, ctx: OperationContext, branch_name: str) -> None:
        self._record("delete_branch", branch_name)
        if branch_name in self.fail_delete_branch:
            raise GitCommandError(["branch", "-D", branch_name], 1, "injected failure")
        with self._lock:
            if self.branches.pop(branch_name, None) is None:
                raise GitCommandError(["branch", "-D", branch_name], 1, f"branch '{branch_name}' not found")

    def delete_remote_branch(self, ctx: OperationContext, branch_name: str) -> None:
        self._record("delete_remote_branch", branch_name)
        with self._lock:
            self.remote_deleted.append(branch_name)

    def branch_info(self, ctx: OperationContext, branch_name: str) -> str:
        with self._lock:
            commits = list(self.branches.get(branch_name, []))
        if not commits:
            return f"No commits ahead of {self.base_branch}"
        lines = [f"Commits ({len(commits)}):"]
        lines.extend(f"  {message}" for message in commits[-5:])
        return "\n".join(lines)

    def update_main_branch(self, ctx: OperationContext) -> None:
        self._record("update_main_branch", self.base_branch)
        if self.fail_update_main:
            raise GitCommandError(["fetch", "origin", f"{self.base_branch}:{self.base_branch}"], 1, "no remote")
        self.main_updates += 1

    def untracked_files(self, ctx: OperationContext) -> list[str]:
        return list(self.untracked)
