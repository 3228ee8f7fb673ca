"""Container runtime backed by the Docker Engine SDK."""

from __future__ import annotations

import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, cast

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.types import Mount as DockerMount
from loguru import logger

from ..constants import DEFAULT_STOP_TIMEOUT_SECONDS, DOCKER_SOCKET_PATH, LABEL_MANAGED
from ..context import OperationContext
from ..errors import (
    ContainerCreateError,
    ContainerNotFoundError,
    ContainerRuntimeError,
    ContainerStartError,
    ImageBuildError,
)
from ..models import BuildSpec, ContainerConfig, ContainerInfo
from ..utils import _parse_iso
from .interfaces import ContainerRuntime

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")

INJECT_MARKER = "# Injected from devcells config.yaml"


def render_dockerfile(base: str, inject: list[str]) -> str:
    """Append one RUN line per injected command to a Dockerfile body."""
    commands = [cmd.strip() for cmd in inject if cmd and cmd.strip()]
    if not commands:
        return base
    text = base if base.endswith("\n") else base + "\n"
    text += f"\n{INJECT_MARKER}\n"
    for cmd in commands:
        text += f"RUN {cmd}\n"
    return text


def _parse_docker_time(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    if not value:
        return None
    # Docker reports nanoseconds; datetime only takes microseconds.
    return _parse_iso(_FRACTION_RE.sub(r".\1", str(value)))


def create_kwargs(cfg: ContainerConfig) -> dict[str, Any]:
    """Translate a ContainerConfig into ``containers.create`` keyword arguments."""
    sec = cfg.security
    mounts = [
        DockerMount(target=m.target, source=m.source, type="bind", read_only=m.read_only)
        for m in cfg.mounts
    ]
    if sec.effective_docker_socket():
        mounts.append(DockerMount(target=DOCKER_SOCKET_PATH, source=DOCKER_SOCKET_PATH, type="bind"))

    kwargs: dict[str, Any] = {
        "name": cfg.name,
        "command": list(cfg.command),
        "tty": True,
        "environment": dict(cfg.env),
        "labels": dict(cfg.labels),
        "mounts": mounts,
        "init": sec.effective_init(),
        "privileged": sec.effective_privileged(),
    }
    cap_drop = sec.effective_cap_drop()
    if cap_drop:
        kwargs["cap_drop"] = cap_drop
    cap_add = sec.effective_cap_add()
    if cap_add:
        kwargs["cap_add"] = cap_add
    if sec.effective_no_new_privileges():
        kwargs["security_opt"] = ["no-new-privileges:true"]
    pids_limit = sec.effective_pids_limit()
    if pids_limit > 0:
        kwargs["pids_limit"] = pids_limit
    if sec.effective_host_network():
        kwargs["network_mode"] = "host"
    if sec.effective_host_pid():
        kwargs["pid_mode"] = "host"
    if sec.effective_host_ipc():
        kwargs["ipc_mode"] = "host"
    if cfg.cpus > 0:
        kwargs["nano_cpus"] = int(cfg.cpus * 1_000_000_000)
    if cfg.memory_bytes > 0:
        kwargs["mem_limit"] = cfg.memory_bytes
    return kwargs


class DockerRuntime(ContainerRuntime):
    """Run workstream containers on the local Docker daemon.

    The SDK calls are blocking; the context is checked around each one, except
    after a create, where the new id must reach the caller so it can be
    removed. The remaining deadline bounds stop timeouts.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None) -> None:
        if client is None:
            try:
                client = docker.from_env()
            except DockerException as exc:
                raise ContainerRuntimeError(f"cannot connect to Docker daemon: {exc}") from exc
            logger.debug("Connected to Docker daemon")
        self.docker = client

    def _get(self, container_id: str) -> Container:
        try:
            return cast(Container, self.docker.containers.get(container_id))
        except NotFound as exc:
            raise ContainerNotFoundError(f"container {container_id} not found") from exc
        except APIError as exc:
            raise ContainerRuntimeError(f"inspect {container_id}: {exc}") from exc

    def create_container(self, ctx: OperationContext, cfg: ContainerConfig) -> str:
        ctx.check(f"create container {cfg.name}")
        try:
            container = cast(Container, self.docker.containers.create(cfg.image, **create_kwargs(cfg)))
        except APIError as exc:
            raise ContainerCreateError(f"docker create {cfg.name}: {exc}") from exc
        logger.info("Created container: {} ({})", cfg.name, container.short_id)
        return str(container.id)

    def start_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"start container {container_id[:12]}")
        container = self._get(container_id)
        try:
            container.start()
        except APIError as exc:
            raise ContainerStartError(f"docker start {container_id[:12]}: {exc}", container_id) from exc
        ctx.check(f"start container {container_id[:12]}")

    def _stop_timeout(self, ctx: OperationContext) -> int:
        remaining = ctx.remaining()
        if remaining is None:
            return DEFAULT_STOP_TIMEOUT_SECONDS
        return max(0, min(DEFAULT_STOP_TIMEOUT_SECONDS, int(remaining)))

    def stop_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"stop container {container_id[:12]}")
        container = self._get(container_id)
        try:
            container.stop(timeout=self._stop_timeout(ctx))
        except APIError as exc:
            raise ContainerRuntimeError(f"docker stop {container_id[:12]}: {exc}") from exc

    def pause_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"pause container {container_id[:12]}")
        container = self._get(container_id)
        try:
            container.pause()
        except APIError as exc:
            raise ContainerRuntimeError(f"docker pause {container_id[:12]}: {exc}") from exc

    def unpause_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"unpause container {container_id[:12]}")
        container = self._get(container_id)
        try:
            container.unpause()
        except APIError as exc:
            raise ContainerRuntimeError(f"docker unpause {container_id[:12]}: {exc}") from exc

    def remove_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"remove container {container_id[:12]}")
        container = self._get(container_id)
        try:
            container.remove(force=True)
        except NotFound as exc:
            raise ContainerNotFoundError(f"container {container_id} not found") from exc
        except APIError as exc:
            raise ContainerRuntimeError(f"docker rm {container_id[:12]}: {exc}") from exc

    def get_container_state(self, ctx: OperationContext, container_id: str) -> str:
        ctx.check(f"inspect container {container_id[:12]}")
        return str(self._get(container_id).status)

    def list_containers(self, ctx: OperationContext, prefix: str) -> list[ContainerInfo]:
        ctx.check("list containers")
        try:
            containers = cast(
                list[Container],
                self.docker.containers.list(all=True, filters={"name": prefix}),
            )
        except APIError as exc:
            raise ContainerRuntimeError(f"docker ps: {exc}") from exc
        result: list[ContainerInfo] = []
        for c in containers:
            name = str(c.name or "").lstrip("/")
            # The daemon's name filter is a substring match.
            if not name.startswith(prefix):
                continue
            result.append(
                ContainerInfo(
                    id=str(c.id),
                    name=name,
                    state=str(c.status),
                    created=_parse_docker_time(c.attrs.get("Created")),
                    labels=dict(c.labels or {}),
                )
            )
        return result

    def image_exists(self, ctx: OperationContext, image_name: str) -> bool:
        ctx.check(f"inspect image {image_name}")
        try:
            self.docker.images.get(image_name)
        except ImageNotFound:
            return False
        except APIError as exc:
            raise ContainerRuntimeError(f"inspect image {image_name}: {exc}") from exc
        return True

    def build_image(self, ctx: OperationContext, image_name: str, spec: BuildSpec) -> None:
        ctx.check(f"build image {image_name}")
        context_dir = Path(spec.context)
        dockerfile = spec.dockerfile
        rendered_path: Optional[Path] = None
        if spec.inject:
            source = Path(dockerfile)
            if not source.is_absolute():
                source = context_dir / source
            try:
                base = source.read_text(encoding="utf-8")
                fd, tmp_name = tempfile.mkstemp(prefix=".devcells.", suffix=".Dockerfile", dir=context_dir)
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(render_dockerfile(base, spec.inject))
            except OSError as exc:
                raise ImageBuildError(f"prepare Dockerfile for {image_name}: {exc}") from exc
            rendered_path = Path(tmp_name)
            dockerfile = rendered_path.name

        logger.info("Building {} from {}", image_name, spec.dockerfile)
        try:
            _, logs = self.docker.images.build(
                path=str(context_dir),
                dockerfile=dockerfile,
                tag=image_name,
                buildargs=dict(spec.build_args) or None,
                rm=True,
                labels={LABEL_MANAGED: "true"},
            )
            for chunk in logs:
                if isinstance(chunk, dict) and "stream" in chunk:
                    line = str(chunk["stream"]).strip()
                    if line:
                        logger.debug("  {}", line)
        except (BuildError, APIError) as exc:
            raise ImageBuildError(f"docker build {image_name}: {exc}") from exc
        finally:
            if rendered_path is not None:
                try:
                    rendered_path.unlink()
                except FileNotFoundError:
                    pass
        ctx.check(f"build image {image_name}")
