"""Derive worktree directory names and container names from branch names.

Container names follow ``<prefix><project>-<sanitized-branch>-<YYYYMMDD-HHMMSS>``.
Reconciliation parses this format back, so it must stay stable.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import CONTAINER_TIMESTAMP_FORMAT, DEFAULT_PROJECT_NAME, UNNAMED_BRANCH

_SEPARATOR_RE = re.compile(r"[/\\ ]")
_DASH_RUN_RE = re.compile(r"-{2,}")
_TIMESTAMP_SUFFIX_RE = re.compile(r"-(\d{8}-\d{6})$")


def sanitize_branch_name(branch_name: str) -> str:
    """Turn a branch name into a single safe path component.

    ``feature/foo`` becomes ``feature-foo`` and ``my branch`` becomes
    ``my-branch``. A name that sanitizes to nothing becomes ``unnamed``.
    """
    safe = _SEPARATOR_RE.sub("-", branch_name or "")
    safe = _DASH_RUN_RE.sub("-", safe)
    safe = safe.strip("-")
    return safe or UNNAMED_BRANCH


def project_name(repo_path: Path | str) -> str:
    name = Path(str(repo_path)).name if repo_path else ""
    if not name or name == ".":
        return DEFAULT_PROJECT_NAME
    return name


def project_prefix(prefix: str, project: str) -> str:
    return f"{prefix}{project}-"


def container_name(prefix: str, project: str, branch_name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime(CONTAINER_TIMESTAMP_FORMAT)
    return f"{project_prefix(prefix, project)}{sanitize_branch_name(branch_name)}-{stamp}"


def parse_branch_from_container_name(name: str, prefix: str, project: str) -> Optional[str]:
    """Recover the sanitized branch from a container name.

    Returns None when the name is outside this project's namespace or lacks
    the trailing timestamp.
    """
    name = name.lstrip("/")
    scope = project_prefix(prefix, project)
    if not name.startswith(scope):
        return None
    rest = name[len(scope):]
    match = _TIMESTAMP_SUFFIX_RE.search(rest)
    if not match:
        return None
    branch = rest[: match.start()]
    return branch or None
