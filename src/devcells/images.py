"""Make sure a workstream image exists locally before a container is created."""

from __future__ import annotations

from typing import Optional

from loguru import logger

from .build_lock import BuildLockRegistry
from .context import OperationContext
from .errors import ImageUnavailableError
from .models import BuildSpec
from .runtime.interfaces import ContainerRuntime


class ImageManager:
    def __init__(self, runtime: ContainerRuntime, locks: Optional[BuildLockRegistry] = None) -> None:
        self.runtime = runtime
        self.locks = locks or BuildLockRegistry()

    def ensure_image(self, ctx: OperationContext, image_name: str, build: Optional[BuildSpec] = None) -> bool:
        """Return once ``image_name`` exists, building it if a recipe is given.

        Returns:
            True if this call built the image.

        Raises:
            ImageUnavailableError: If the image is missing and ``build`` is None.
        """
        if self.runtime.image_exists(ctx, image_name):
            logger.debug("Image exists: {}", image_name)
            return False
        if build is None:
            raise ImageUnavailableError(f"image '{image_name}' not found; pull it or supply a Dockerfile")
        logger.info("Image {} not found, building from {}", image_name, build.dockerfile)
        built = self.locks.build_once(
            ctx,
            image_name,
            exists=lambda: self.runtime.image_exists(ctx, image_name),
            build=lambda: self.runtime.build_image(ctx, image_name, build),
        )
        if built:
            logger.info("Successfully built image: {}", image_name)
        return built
