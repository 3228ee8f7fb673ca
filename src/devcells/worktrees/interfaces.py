from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..context import OperationContext


class WorktreeStore(ABC):
    """Git worktree and branch operations for one repository."""

    @abstractmethod
    def create_worktree(self, ctx: OperationContext, path: str, branch_name: str) -> None:
        """Create ``branch_name`` and check it out in a new worktree at ``path``."""
        raise NotImplementedError

    @abstractmethod
    def create_worktree_from_existing(self, ctx: OperationContext, path: str, branch_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove_worktree(self, ctx: OperationContext, path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def worktree_list(self, ctx: OperationContext) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def worktree_exists_for_branch(self, ctx: OperationContext, branch_name: str) -> tuple[str, bool]:
        raise NotImplementedError

    @abstractmethod
    def worktree_branches(self, ctx: OperationContext) -> set[str]:
        """Branch names that currently have a worktree checked out."""
        raise NotImplementedError

    @abstractmethod
    def branch_exists(self, ctx: OperationContext, branch_name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete_branch(self, ctx: OperationContext, branch_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_remote_branch(self, ctx: OperationContext, branch_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def branch_info(self, ctx: OperationContext, branch_name: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def update_main_branch(self, ctx: OperationContext) -> None:
        raise NotImplementedError

    @abstractmethod
    def untracked_files(self, ctx: OperationContext) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def git_dir(self) -> Optional[str]:
        """Host path of the repository's .git directory, if it has one."""
        raise NotImplementedError
