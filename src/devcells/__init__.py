"""Provide the public `devcells` package exports."""

from __future__ import annotations

from .build_lock import BuildLockRegistry
from .context import OperationContext
from .models import CreateOptions, CreateResult, DestroyOptions, Workstream
from .orchestrator import Orchestrator
from .reconcile import Reconciler
from .security import SecurityConfig, SecurityTier
from .tracking import ContainerTracker

__all__ = [
    "BuildLockRegistry",
    "ContainerTracker",
    "CreateOptions",
    "CreateResult",
    "DestroyOptions",
    "OperationContext",
    "Orchestrator",
    "Reconciler",
    "SecurityConfig",
    "SecurityTier",
    "Workstream",
]
