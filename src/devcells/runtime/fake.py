"""In-memory container runtime used by tests and dry runs."""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..constants import (
    CONTAINER_STATE_CREATED,
    CONTAINER_STATE_EXITED,
    CONTAINER_STATE_PAUSED,
    CONTAINER_STATE_RUNNING,
)
from ..context import OperationContext
from ..errors import (
    ContainerCreateError,
    ContainerNotFoundError,
    ContainerRuntimeError,
    ContainerStartError,
    ImageBuildError,
)
from ..models import BuildSpec, ContainerConfig, ContainerInfo
from ..security import SecurityTier
from .interfaces import ContainerRuntime


@dataclass
class FakeContainer:
    id: str
    name: str
    state: str
    labels: dict[str, str] = field(default_factory=dict)
    config: Optional[ContainerConfig] = None
    created: datetime = field(default_factory=datetime.now)

    def info(self) -> ContainerInfo:
        return ContainerInfo(id=self.id, name=self.name, state=self.state, created=self.created, labels=dict(self.labels))


class FakeContainerRuntime(ContainerRuntime):
    """Deterministic runtime with failure injection.

    ``reject_create_tiers`` / ``reject_start_tiers`` make create or start fail
    for containers requested at those security tiers. ``fail_create`` and
    ``fail_start`` are callables returning an error message (or None) for
    finer control. ``fail_stop`` / ``fail_remove`` hold container ids whose
    stop or removal raises. Every call is appended to ``calls``.
    """

    def __init__(self, images: Optional[set[str]] = None, build_delay: float = 0.0) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.containers: dict[str, FakeContainer] = {}
        self.images: set[str] = set(images or ())
        self.build_delay = build_delay
        self.build_counts: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.reject_create_tiers: set[SecurityTier] = set()
        self.reject_start_tiers: set[SecurityTier] = set()
        self.fail_create: Optional[Callable[[ContainerConfig], Optional[str]]] = None
        self.fail_start: Optional[Callable[[FakeContainer], Optional[str]]] = None
        self.fail_stop: set[str] = set()
        self.fail_remove: set[str] = set()
        self.fail_build: set[str] = set()
        self.created_configs: list[ContainerConfig] = []

    def _record(self, op: str, target: str) -> None:
        with self._lock:
            self.calls.append((op, target))

    def calls_for(self, op: str) -> list[str]:
        with self._lock:
            return [target for name, target in self.calls if name == op]

    def _get(self, container_id: str) -> FakeContainer:
        container = self.containers.get(container_id)
        if container is None:
            raise ContainerNotFoundError(f"container {container_id} not found")
        return container

    def add_container(self, name: str, state: str = CONTAINER_STATE_RUNNING, labels: Optional[dict[str, str]] = None) -> str:
        """Seed a container that this runtime did not create through the orchestrator."""
        with self._lock:
            container_id = f"fake{next(self._ids):08d}"
            self.containers[container_id] = FakeContainer(id=container_id, name=name, state=state, labels=dict(labels or {}))
        return container_id

    @property
    def build_count(self) -> int:
        with self._lock:
            return sum(self.build_counts.values())

    def create_container(self, ctx: OperationContext, cfg: ContainerConfig) -> str:
        ctx.check(f"create container {cfg.name}")
        self._record("create", cfg.name)
        if cfg.security.tier in self.reject_create_tiers:
            raise ContainerCreateError(f"create {cfg.name}: rejected at tier {cfg.security.tier.value}")
        if self.fail_create is not None:
            message = self.fail_create(cfg)
            if message:
                raise ContainerCreateError(message)
        if cfg.image not in self.images:
            raise ContainerCreateError(f"create {cfg.name}: no such image {cfg.image}")
        with self._lock:
            container_id = f"fake{next(self._ids):08d}"
            self.containers[container_id] = FakeContainer(
                id=container_id,
                name=cfg.name,
                state=CONTAINER_STATE_CREATED,
                labels=dict(cfg.labels),
                config=cfg,
            )
            self.created_configs.append(cfg)
        return container_id

    def start_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"start container {container_id}")
        self._record("start", container_id)
        container = self._get(container_id)
        tier = container.config.security.tier if container.config is not None else None
        if tier is not None and tier in self.reject_start_tiers:
            raise ContainerStartError(f"start {container.name}: rejected at tier {tier.value}", container_id)
        if self.fail_start is not None:
            message = self.fail_start(container)
            if message:
                raise ContainerStartError(message, container_id)
        container.state = CONTAINER_STATE_RUNNING

    def stop_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"stop container {container_id}")
        self._record("stop", container_id)
        if container_id in self.fail_stop:
            raise ContainerRuntimeError(f"stop {container_id}: injected failure")
        self._get(container_id).state = CONTAINER_STATE_EXITED

    def pause_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"pause container {container_id}")
        self._record("pause", container_id)
        container = self._get(container_id)
        if container.state != CONTAINER_STATE_RUNNING:
            raise ContainerRuntimeError(f"container {container_id} is not running")
        container.state = CONTAINER_STATE_PAUSED

    def unpause_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"unpause container {container_id}")
        self._record("unpause", container_id)
        container = self._get(container_id)
        if container.state != CONTAINER_STATE_PAUSED:
            raise ContainerRuntimeError(f"container {container_id} is not paused")
        container.state = CONTAINER_STATE_RUNNING

    def remove_container(self, ctx: OperationContext, container_id: str) -> None:
        ctx.check(f"remove container {container_id}")
        self._record("remove", container_id)
        if container_id in self.fail_remove:
            raise ContainerRuntimeError(f"remove {container_id}: injected failure")
        with self._lock:
            if self.containers.pop(container_id, None) is None:
                raise ContainerNotFoundError(f"container {container_id} not found")

    def get_container_state(self, ctx: OperationContext, container_id: str) -> str:
        ctx.check(f"inspect container {container_id}")
        return self._get(container_id).state

    def list_containers(self, ctx: OperationContext, prefix: str) -> list[ContainerInfo]:
        ctx.check("list containers")
        with self._lock:
            return [c.info() for c in self.containers.values() if c.name.startswith(prefix)]

    def image_exists(self, ctx: OperationContext, image_name: str) -> bool:
        ctx.check(f"inspect image {image_name}")
        with self._lock:
            return image_name in self.images

    def build_image(self, ctx: OperationContext, image_name: str, spec: BuildSpec) -> None:
        ctx.check(f"build image {image_name}")
        self._record("build", image_name)
        with self._lock:
            self.build_counts[image_name] = self.build_counts.get(image_name, 0) + 1
        if self.build_delay:
            time.sleep(self.build_delay)
        if image_name in self.fail_build:
            raise ImageBuildError(f"build {image_name}: injected failure")
        with self._lock:
            self.images.add(image_name)
