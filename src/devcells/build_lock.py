"""Per-image build locks that stop two callers building the same image at once."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from loguru import logger

from .context import OperationContext


class BuildLockRegistry:
    """Map image name to a lock, created on first use.

    The registry guard is only held while looking up or inserting a lock; the
    per-image lock is held for the whole build. Builds of different images run
    concurrently, builds of the same image are serialized.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, image_name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(image_name)
            if lock is None:
                lock = threading.Lock()
                self._locks[image_name] = lock
            return lock

    def __contains__(self, image_name: str) -> bool:
        with self._guard:
            return image_name in self._locks

    @contextmanager
    def acquire(self, image_name: str, ctx: OperationContext | None = None) -> Iterator[None]:
        """Hold the build lock for ``image_name``.

        When ``ctx`` is given, waiting for the lock is abandoned as soon as the
        context is cancelled or expires.
        """
        lock = self.lock_for(image_name)
        if ctx is None:
            lock.acquire()
        else:
            while not lock.acquire(timeout=0.1):
                ctx.check(f"waiting for build lock on {image_name}")
        try:
            yield
        finally:
            lock.release()

    def build_once(
        self,
        ctx: OperationContext,
        image_name: str,
        exists: Callable[[], bool],
        build: Callable[[], None],
    ) -> bool:
        """Build ``image_name`` unless it exists once the lock is held.

        Returns:
            True if this caller ran ``build``; False if another caller had
            already produced the image while this one waited.
        """
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for build lock ({})", thread_id, image_name)
        with self.acquire(image_name, ctx):
            logger.debug("Thread {} acquired build lock ({})", thread_id, image_name)
            if exists():
                logger.info("Image {} already built by another workstream", image_name)
                return False
            ctx.check(f"build {image_name}")
            build()
            return True
