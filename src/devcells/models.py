"""Define workstream, container, and lifecycle option/result models."""

from __future__ import annotations

import itertools
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .constants import CONTAINER_ACTIVE_STATES
from .security import SecurityConfig, SecurityRelaxation
from .utils import _now_iso

_id_counter = itertools.count(1)


def new_workstream_id() -> str:
    # The counter keeps ids unique when several are minted in the same nanosecond.
    return f"{time.time_ns()}-{next(_id_counter)}"


@dataclass
class Workstream:
    """One branch, its worktree, and at most one container.

    ``container_id`` and ``worktree_path`` are only written by the orchestrator
    after an operation succeeds.
    """

    branch_name: str
    id: str = field(default_factory=new_workstream_id)
    container_id: str = ""
    worktree_path: str = ""
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = False


@dataclass
class ContainerConfig:
    name: str
    image: str
    mounts: list[Mount] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    cpus: float = 0.0
    memory_bytes: int = 0
    security: SecurityConfig = field(default_factory=SecurityConfig)
    command: list[str] = field(default_factory=lambda: ["sleep", "infinity"])


@dataclass
class ContainerInfo:
    id: str
    name: str
    state: str
    created: Optional[datetime] = None
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.state in CONTAINER_ACTIVE_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "created": self.created.isoformat() if self.created else None,
            "labels": dict(self.labels),
        }


@dataclass
class BuildSpec:
    """Recipe for building an image that is missing locally."""

    dockerfile: str
    context: str
    build_args: dict[str, str] = field(default_factory=dict)
    # Shell commands appended to the Dockerfile as RUN lines.
    inject: list[str] = field(default_factory=list)


@dataclass
class CreateOptions:
    image_name: str
    build: Optional[BuildSpec] = None
    copy_untracked: bool = False
    untracked_files: list[str] = field(default_factory=list)
    use_existing_branch: bool = False
    update_main: bool = False
    cpus: float = 0.0
    memory_bytes: int = 0
    security: Optional[SecurityConfig] = None
    extra_mounts: list[Mount] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    config_mounts: list[Mount] = field(default_factory=list)
    persist_relaxation: bool = True


@dataclass
class DestroyOptions:
    keep_worktree: bool = False
    delete_branch: bool = False
    delete_remote_branch: bool = False


@dataclass
class CreateResult:
    container_id: str
    container_name: str
    worktree_path: str
    security_relaxation: Optional[SecurityRelaxation] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "worktree_path": self.worktree_path,
            "security_relaxation": self.security_relaxation.to_dict() if self.security_relaxation else None,
        }


@dataclass
class BranchConflict:
    branch_name: str
    has_worktree: bool
    worktree_path: str = ""
    branch_info: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackedContainer:
    container_id: str
    workstream_id: str
    branch_name: str
    repo_path: str
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackedContainer":
        return cls(
            container_id=str(data.get("container_id") or ""),
            workstream_id=str(data.get("workstream_id") or ""),
            branch_name=str(data.get("branch_name") or ""),
            repo_path=str(data.get("repo_path") or ""),
            created_at=str(data.get("created_at") or datetime.now(timezone.utc).isoformat()),
        )


@dataclass
class ReconcileReport:
    """Outcome of one orphan sweep. Skips are normal outcomes, not failures."""

    removed: list[str] = field(default_factory=list)
    skipped_known: list[str] = field(default_factory=list)
    skipped_worktree: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.removed)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["removed_count"] = self.removed_count
        return data
