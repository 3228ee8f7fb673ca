from __future__ import annotations

from abc import ABC, abstractmethod

from ..context import OperationContext
from ..models import BuildSpec, ContainerConfig, ContainerInfo


class ContainerRuntime(ABC):
    """Minimal container-engine surface the orchestrator depends on.

    Implementations raise :class:`~devcells.errors.ContainerCreateError`,
    :class:`~devcells.errors.ContainerStartError`, and
    :class:`~devcells.errors.ContainerNotFoundError` so callers can tell a
    hardening rejection apart from a missing container.
    """

    @abstractmethod
    def create_container(self, ctx: OperationContext, cfg: ContainerConfig) -> str:
        raise NotImplementedError

    @abstractmethod
    def start_container(self, ctx: OperationContext, container_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop_container(self, ctx: OperationContext, container_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def pause_container(self, ctx: OperationContext, container_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def unpause_container(self, ctx: OperationContext, container_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove_container(self, ctx: OperationContext, container_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_container_state(self, ctx: OperationContext, container_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def list_containers(self, ctx: OperationContext, prefix: str) -> list[ContainerInfo]:
        raise NotImplementedError

    @abstractmethod
    def image_exists(self, ctx: OperationContext, image_name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def build_image(self, ctx: OperationContext, image_name: str, spec: BuildSpec) -> None:
        raise NotImplementedError
