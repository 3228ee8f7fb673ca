"""Container runtime backends (Docker SDK and an in-memory fake)."""

from .docker_runtime import DockerRuntime
from .fake import FakeContainer, FakeContainerRuntime
from .interfaces import ContainerRuntime

__all__ = [
    "ContainerRuntime",
    "DockerRuntime",
    "FakeContainer",
    "FakeContainerRuntime",
]
