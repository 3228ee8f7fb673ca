"""Cancellation and deadline propagation for blocking operations.

Every call into the container runtime, the worktree store, or an image build
takes an :class:`OperationContext`. Cancelling a context (or letting its
deadline pass) makes the next :meth:`OperationContext.check` raise
:class:`~devcells.errors.OperationCancelled`; subprocess helpers poll the
context and terminate the child when it fires.
"""

from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import OperationCancelled


class OperationContext:
    """Cancellable, deadline-bearing handle passed down blocking call chains."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        parent: Optional["OperationContext"] = None,
    ) -> None:
        self._parent = parent
        self._cancel_event = threading.Event()
        self._reason: Optional[str] = None
        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline: Optional[float] = deadline

    @classmethod
    def background(cls) -> "OperationContext":
        return cls()

    def with_timeout(self, seconds: float) -> "OperationContext":
        """Return a child context that also expires after ``seconds``."""
        return OperationContext(seconds, parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return False

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def done(self) -> bool:
        return self.cancelled or self.expired

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def reason(self) -> str:
        if self._cancel_event.is_set():
            return self._reason or "cancelled"
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason()
        if self.expired:
            return "deadline exceeded"
        return ""

    def check(self, operation: str = "operation") -> None:
        if self.done:
            raise OperationCancelled(f"{operation}: {self.reason()}")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if the context is done."""
        end = time.monotonic() + seconds
        while True:
            if self.done:
                return True
            left = end - time.monotonic()
            if left <= 0:
                return False
            self._cancel_event.wait(min(left, 0.1))
