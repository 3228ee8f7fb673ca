"""Worktree store that shells out to the ``git`` binary."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from ..context import OperationContext
from ..errors import GitCommandError, OperationCancelled, WorktreeCreationError
from .interfaces import WorktreeStore

BASE_BRANCH_CANDIDATES = ("main", "master")
BRANCH_INFO_MAX_COMMITS = 5
POLL_INTERVAL_SECONDS = 0.1


def _parse_porcelain(output: str) -> list[tuple[str, Optional[str]]]:
    """Parse ``git worktree list --porcelain`` into ``(path, branch)`` pairs."""
    entries: list[tuple[str, Optional[str]]] = []
    path: Optional[str] = None
    branch: Optional[str] = None
    for line in output.splitlines() + [""]:
        if line.startswith("worktree "):
            path = line[len("worktree "):]
            branch = None
        elif line.startswith("branch refs/heads/"):
            branch = line[len("branch refs/heads/"):]
        elif not line.strip() and path is not None:
            entries.append((path, branch))
            path = None
            branch = None
    return entries


class GitWorktreeStore(WorktreeStore):
    def __init__(self, repo_path: Path | str) -> None:
        self.repo_path = Path(repo_path)

    def _run(self, ctx: OperationContext, *args: str) -> str:
        """Run ``git <args>`` in the repository and return its combined output.

        The child is terminated, then killed, as soon as ``ctx`` is done.

        Raises:
            GitCommandError: On a non-zero exit status.
            OperationCancelled: If the context fired before git finished.
        """
        ctx.check(f"git {args[0] if args else ''}")
        process = subprocess.Popen(
            ["git", *args],
            cwd=self.repo_path,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        while True:
            if ctx.done:
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                if process.stdout is not None:
                    process.stdout.close()
                raise OperationCancelled(f"git {' '.join(args)}: {ctx.reason()}")
            try:
                output, _ = process.communicate(timeout=POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                continue
        output = (output or "").strip()
        if process.returncode != 0:
            raise GitCommandError(list(args), process.returncode, output)
        return output

    def git_dir(self) -> Optional[str]:
        path = self.repo_path / ".git"
        return str(path) if path.exists() else None

    def create_worktree(self, ctx: OperationContext, path: str, branch_name: str) -> None:
        try:
            self._run(ctx, "worktree", "add", "-b", branch_name, path)
        except GitCommandError as exc:
            raise WorktreeCreationError(f"git create worktree: {exc}") from exc

    def create_worktree_from_existing(self, ctx: OperationContext, path: str, branch_name: str) -> None:
        try:
            self._run(ctx, "worktree", "add", path, branch_name)
        except GitCommandError as exc:
            raise WorktreeCreationError(f"git create worktree from existing: {exc}") from exc

    def remove_worktree(self, ctx: OperationContext, path: str) -> None:
        try:
            self._run(ctx, "worktree", "prune")
        except GitCommandError as exc:
            logger.debug("git worktree prune failed: {}", exc)
        self._run(ctx, "worktree", "remove", "--force", path)

    def _worktrees(self, ctx: OperationContext) -> list[tuple[str, Optional[str]]]:
        return _parse_porcelain(self._run(ctx, "worktree", "list", "--porcelain"))

    def worktree_list(self, ctx: OperationContext) -> list[str]:
        return [path for path, _ in self._worktrees(ctx)]

    def worktree_exists_for_branch(self, ctx: OperationContext, branch_name: str) -> tuple[str, bool]:
        try:
            entries = self._worktrees(ctx)
        except GitCommandError:
            return "", False
        for path, branch in entries:
            if branch == branch_name:
                return path, True
        return "", False

    def worktree_branches(self, ctx: OperationContext) -> set[str]:
        return {branch for _, branch in self._worktrees(ctx) if branch}

    def branch_exists(self, ctx: OperationContext, branch_name: str) -> bool:
        try:
            self._run(ctx, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}")
        except GitCommandError:
            return False
        return True

    def delete_branch(self, ctx: OperationContext, branch_name: str) -> None:
        self._run(ctx, "branch", "-D", branch_name)

    def delete_remote_branch(self, ctx: OperationContext, branch_name: str) -> None:
        self._run(ctx, "push", "origin", "--delete", branch_name)

    def base_branch(self, ctx: OperationContext) -> str:
        for name in BASE_BRANCH_CANDIDATES:
            if self.branch_exists(ctx, name):
                return name
        try:
            ref = self._run(ctx, "symbolic-ref", "refs/remotes/origin/HEAD")
        except GitCommandError:
            return BASE_BRANCH_CANDIDATES[0]
        return ref.rsplit("/", 1)[-1] or BASE_BRANCH_CANDIDATES[0]

    def branch_info(self, ctx: OperationContext, branch_name: str) -> str:
        """Summarize commits on ``branch_name`` that are not on the base branch."""
        base = self.base_branch(ctx)
        count = self._run(ctx, "rev-list", "--count", f"{base}..{branch_name}").strip()
        if count == "0":
            return f"No commits ahead of {base}"

        log_out = self._run(ctx, "log", "--oneline", f"-{BRANCH_INFO_MAX_COMMITS}", f"{base}..{branch_name}")
        lines = [f"Commits ({count}):"]
        lines.extend(f"  {line}" for line in log_out.splitlines() if line)
        if int(count) > BRANCH_INFO_MAX_COMMITS:
            lines.append("  ...")
        info = "\n".join(lines)

        try:
            diff_out = self._run(ctx, "diff", "--stat", "--stat-width=50", f"{base}...{branch_name}")
        except GitCommandError:
            return info
        for line in reversed(diff_out.splitlines()):
            line = line.strip()
            if line and ("changed" in line or "insertion" in line or "deletion" in line):
                info += f"\n\n{line}"
                break
        return info

    def update_main_branch(self, ctx: OperationContext) -> None:
        """Fast-forward the local base branch from origin without checking it out."""
        base = self.base_branch(ctx)
        self._run(ctx, "fetch", "origin", f"{base}:{base}")

    def untracked_files(self, ctx: OperationContext) -> list[str]:
        out = self._run(ctx, "ls-files", "--others", "--exclude-standard")
        return [line for line in out.splitlines() if line.strip()]
