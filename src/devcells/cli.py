from __future__ import annotations

import argparse
import json
import re
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import (
    Settings,
    load_dockerfile_inject,
    load_settings,
    parse_tier_option,
    write_default_global_config,
)
from .constants import CONTAINER_STATE_RUNNING, LABEL_BRANCH, LABEL_WORKSTREAM
from .context import OperationContext
from .errors import DevcellsError
from .logging_utils import configure_logging
from .models import BuildSpec, CreateOptions, DestroyOptions, Workstream
from .naming import project_prefix, sanitize_branch_name
from .orchestrator import Orchestrator
from .reconcile import Reconciler, container_branch
from .runtime.docker_runtime import DockerRuntime
from .runtime.interfaces import ContainerRuntime
from .security import SecurityConfig
from .tracking import ContainerTracker, HeartbeatThread
from .worktrees.git import GitWorktreeStore
from .worktrees.interfaces import WorktreeStore

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)i?b?\s*$", re.I)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_memory(value: str) -> int:
    """Parse ``4g`` / ``512m`` / ``1073741824`` into bytes."""
    match = _MEMORY_RE.match(value or "")
    if not match:
        raise argparse.ArgumentTypeError(f"invalid memory size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


def _parse_env(pairs: Optional[list[str]]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


@dataclass
class Services:
    settings: Settings
    repo_path: Path
    runtime: ContainerRuntime
    worktrees: WorktreeStore
    tracker: ContainerTracker
    orchestrator: Orchestrator
    reconciler: Reconciler


def _resolve_repo(repo: Optional[str]) -> Path:
    return Path(repo).expanduser().resolve() if repo else Path.cwd().resolve()


def _services(args: argparse.Namespace) -> Services:
    settings = load_settings()
    repo_path = _resolve_repo(args.repo)
    runtime = DockerRuntime()
    worktrees = GitWorktreeStore(repo_path)
    tracker = ContainerTracker(settings.data_dir, stale_after=settings.heartbeat_stale_seconds)
    orchestrator = Orchestrator(runtime, worktrees, repo_path, settings=settings, tracker=tracker)
    reconciler = Reconciler(runtime, settings.container_prefix)
    return Services(settings, repo_path, runtime, worktrees, tracker, orchestrator, reconciler)


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def _find_workstream(svc: Services, ctx: OperationContext, branch: str) -> Workstream:
    """Rebuild a Workstream for ``branch`` from the tracker, the runtime, and git."""
    ws = Workstream(branch_name=branch)
    tracked = svc.tracker.tracked_for_branch(branch, str(svc.repo_path))
    if tracked:
        ws.id = tracked[-1].workstream_id or ws.id
        ws.container_id = tracked[-1].container_id
    else:
        prefix = svc.settings.container_prefix
        project = svc.orchestrator.project
        wanted = {branch, sanitize_branch_name(branch)}
        candidates = [
            info
            for info in svc.runtime.list_containers(ctx, project_prefix(prefix, project))
            if container_branch(info, prefix, project) in wanted
        ]
        if candidates:
            # Names end in a sortable timestamp; take the newest.
            newest = max(candidates, key=lambda info: info.name)
            ws.container_id = newest.id
            ws.id = newest.labels.get(LABEL_WORKSTREAM, ws.id)
    path, found = svc.worktrees.worktree_exists_for_branch(ctx, branch)
    if found:
        ws.worktree_path = path
    return ws


def _create_options(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> CreateOptions:
    build = None
    if args.dockerfile:
        context_dir = Path(args.build_context).expanduser() if args.build_context else svc.repo_path
        build = BuildSpec(
            dockerfile=args.dockerfile,
            context=str(context_dir),
            inject=load_dockerfile_inject(svc.repo_path, svc.settings),
        )
    security = None
    tier = parse_tier_option(args.tier)
    if tier is not None:
        security = SecurityConfig(tier=tier)
    untracked: list[str] = []
    if getattr(args, "copy_untracked", False):
        untracked = svc.worktrees.untracked_files(ctx)
    return CreateOptions(
        image_name=args.image,
        build=build,
        copy_untracked=bool(untracked),
        untracked_files=untracked,
        use_existing_branch=getattr(args, "existing", False),
        update_main=getattr(args, "update_main", False),
        cpus=args.cpus or 0.0,
        memory_bytes=args.memory or 0,
        security=security,
        env=_parse_env(args.env),
        persist_relaxation=not args.no_save_relaxation,
    )


def _cmd_create(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    opts = _create_options(args, svc, ctx)
    ws = Workstream(branch_name=args.branch)
    with HeartbeatThread(svc.tracker, svc.settings.heartbeat_interval_seconds):
        result = svc.orchestrator.create_workstream(ctx, ws, opts)
    _emit({"workstream": ws.to_dict(), "result": result.to_dict()})
    return 0


def _cmd_rm(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    ws = _find_workstream(svc, ctx, args.branch)
    opts = DestroyOptions(
        keep_worktree=args.keep_worktree,
        delete_branch=args.delete_branch,
        delete_remote_branch=args.delete_remote,
    )
    with HeartbeatThread(svc.tracker, svc.settings.heartbeat_interval_seconds):
        svc.orchestrator.destroy_workstream(ctx, ws, opts)
    _emit({"removed": args.branch, "workstream": ws.to_dict()})
    return 0


def _cmd_rebuild(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    ws = _find_workstream(svc, ctx, args.branch)
    opts = _create_options(args, svc, ctx)
    with HeartbeatThread(svc.tracker, svc.settings.heartbeat_interval_seconds):
        result = svc.orchestrator.rebuild_workstream(ctx, ws, opts)
    _emit({"workstream": ws.to_dict(), "result": result.to_dict()})
    return 0


def _cmd_pause(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    ws = _find_workstream(svc, ctx, args.branch)
    svc.orchestrator.pause_workstream(ctx, ws)
    _emit({"paused": args.branch, "container_id": ws.container_id})
    return 0


def _cmd_resume(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    ws = _find_workstream(svc, ctx, args.branch)
    svc.orchestrator.resume_workstream(ctx, ws)
    _emit({"resumed": args.branch, "container_id": ws.container_id})
    return 0


def _cmd_check(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    conflict = svc.orchestrator.check_branch_conflict(ctx, args.branch)
    _emit({"branch": args.branch, "conflict": conflict.to_dict() if conflict else None})
    return 0


def _cmd_ps(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    prefix = svc.settings.container_prefix
    scope = prefix if args.all else project_prefix(prefix, svc.orchestrator.project)
    containers = sorted(svc.runtime.list_containers(ctx, scope), key=lambda c: c.name)
    if args.json:
        _emit({"containers": [c.to_dict() for c in containers]})
        return 0
    table = Table(title=f"devcells: {svc.orchestrator.project}" if not args.all else "devcells")
    table.add_column("Name", style="cyan")
    table.add_column("Branch")
    table.add_column("State")
    table.add_column("Created")
    table.add_column("ID", style="dim")
    for info in containers:
        state_style = "green" if info.state == CONTAINER_STATE_RUNNING else "yellow" if info.active else "red"
        table.add_row(
            info.name,
            info.labels.get(LABEL_BRANCH, ""),
            f"[{state_style}]{info.state}[/{state_style}]",
            info.created.strftime("%Y-%m-%d %H:%M") if info.created else "",
            info.id[:12],
        )
    Console().print(table)
    return 0


def _cmd_prune(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    project = None if args.every_project else svc.orchestrator.project
    report = svc.reconciler.prune(ctx, project=project, include_running=args.all)
    _emit({"prune": report.to_dict()})
    return 0


def _cmd_cleanup(args: argparse.Namespace, svc: Services, ctx: OperationContext) -> int:
    report = svc.reconciler.startup_cleanup(ctx, svc.tracker, svc.worktrees, svc.orchestrator.project)
    _emit({"cleanup": report.to_dict()})
    return 0


def _cmd_init(args: argparse.Namespace) -> int:
    settings = load_settings()
    written = write_default_global_config(settings)
    _emit({"config_path": str(settings.global_config_path), "written": written})
    return 0


def _add_create_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--image", required=True, help="Image to run (built first when --dockerfile is given and it is missing)")
    parser.add_argument("--dockerfile", default=None, help="Dockerfile used to build a missing image")
    parser.add_argument("--build-context", default=None, help="Build context directory (default: repository root)")
    parser.add_argument("--tier", default=None, choices=["hardened", "moderate", "compat"])
    parser.add_argument("--cpus", type=float, default=None)
    parser.add_argument("--memory", type=parse_memory, default=None, help="Memory limit, e.g. 4g or 512m")
    parser.add_argument("--env", action="append", default=None, metavar="KEY=VALUE")
    parser.add_argument("--no-save-relaxation", action="store_true", help="Do not persist a relaxed security tier")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devcells", description="Per-branch development containers backed by git worktrees")
    parser.add_argument("--repo", default=None, help="Repository directory (default: current working directory)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a worktree and container for a branch")
    create.add_argument("branch")
    create.add_argument("--existing", action="store_true", help="Check out an existing branch instead of creating one")
    create.add_argument("--copy-untracked", action="store_true", help="Copy untracked files into the new worktree")
    create.add_argument("--update-main", action="store_true", help="Fast-forward the base branch from origin first")
    _add_create_flags(create)
    create.set_defaults(func=_cmd_create)

    rm = subparsers.add_parser("rm", help="Remove a workstream's container and worktree")
    rm.add_argument("branch")
    rm.add_argument("--keep-worktree", action="store_true")
    rm.add_argument("--delete-branch", action="store_true")
    rm.add_argument("--delete-remote", action="store_true")
    rm.set_defaults(func=_cmd_rm)

    rebuild = subparsers.add_parser("rebuild", help="Recreate a workstream's container, keeping its worktree")
    rebuild.add_argument("branch")
    _add_create_flags(rebuild)
    rebuild.set_defaults(func=_cmd_rebuild)

    for name, handler, help_text in (
        ("pause", _cmd_pause, "Pause a workstream's container"),
        ("resume", _cmd_resume, "Resume a paused container"),
        ("check", _cmd_check, "Report an existing branch or worktree with this name"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("branch")
        sub.set_defaults(func=handler)

    ps = subparsers.add_parser("ps", help="List devcells containers")
    ps.add_argument("--all", action="store_true", help="Include other projects")
    ps.add_argument("--json", action="store_true")
    ps.set_defaults(func=_cmd_ps)

    prune = subparsers.add_parser("prune", help="Remove stopped devcells containers")
    prune.add_argument("--all", action="store_true", help="Also remove running containers")
    prune.add_argument("--every-project", action="store_true")
    prune.set_defaults(func=_cmd_prune)

    cleanup = subparsers.add_parser("cleanup", help="Remove orphaned containers with no worktree")
    cleanup.set_defaults(func=_cmd_cleanup)

    init = subparsers.add_parser("init", help="Write the default global config.yaml")
    init.set_defaults(func=_cmd_init, standalone=True)

    return parser


def main(argv: list[str] | None = None, services: Optional[Callable[[argparse.Namespace], Services]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        if getattr(args, "standalone", False):
            return int(handler(args) or 0)
        svc = (services or _services)(args)
        ctx = OperationContext(svc.settings.operation_timeout_seconds)
        previous = signal.signal(signal.SIGINT, lambda *_: ctx.cancel("interrupted"))
        try:
            return int(handler(args, svc, ctx) or 0)
        finally:
            signal.signal(signal.SIGINT, previous)
    except (DevcellsError, ValueError, argparse.ArgumentTypeError) as exc:
        logger.error("{}", exc)
        sys.stderr.write(f"error: {exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
