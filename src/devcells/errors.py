"""Exception types raised by workstream, container, and tracking operations."""

from __future__ import annotations

from typing import Optional


class DevcellsError(Exception):
    """Base class for all devcells failures."""


class OperationCancelled(DevcellsError):
    """The operation context was cancelled or its deadline passed."""


class GitCommandError(DevcellsError):
    """A git subprocess exited non-zero."""

    def __init__(self, args: list[str], returncode: int, output: str = "") -> None:
        self.command = list(args)
        self.returncode = returncode
        self.output = output
        detail = output.strip() or f"exit status {returncode}"
        super().__init__(f"git {' '.join(args)}: {detail}")


class WorktreeCreationError(DevcellsError):
    """Creating the git worktree for a workstream failed."""


class UntrackedCopyError(DevcellsError):
    """Copying an untracked file into a new worktree failed."""


class ContainerRuntimeError(DevcellsError):
    """A container runtime call failed."""


class ContainerCreateError(ContainerRuntimeError):
    """The runtime refused to create a container."""


class ContainerStartError(ContainerRuntimeError):
    """A created container failed to start."""

    def __init__(self, message: str, container_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.container_id = container_id


class ContainerNotFoundError(ContainerRuntimeError):
    """The runtime has no container with the requested id."""


class ImageUnavailableError(DevcellsError):
    """The image does not exist and no build recipe was supplied."""


class ImageBuildError(DevcellsError):
    """Building an image failed."""


class PersistenceError(DevcellsError):
    """Reading or writing a tracking, heartbeat, or config file failed."""


class WorkstreamStateError(DevcellsError):
    """The workstream lacks the state required by the operation."""


class DestroyError(DevcellsError):
    """One or more steps of a workstream teardown failed.

    Every step is attempted; ``errors`` holds each failure in the order it
    happened.
    """

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = list(errors)
        summary = "; ".join(str(err) for err in self.errors)
        super().__init__(f"destroy had errors: {summary}")
