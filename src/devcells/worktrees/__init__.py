"""Git worktree stores (git CLI and an in-memory fake)."""

from .fake import FakeWorktreeStore
from .git import GitWorktreeStore
from .interfaces import WorktreeStore

__all__ = ["FakeWorktreeStore", "GitWorktreeStore", "WorktreeStore"]
