"""Create-and-start with automatic demotion through the security tiers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from loguru import logger

from .constants import CLEANUP_TIMEOUT_SECONDS
from .context import OperationContext
from .errors import ContainerCreateError, ContainerRuntimeError, ContainerStartError
from .models import ContainerConfig
from .runtime.interfaces import ContainerRuntime
from .security import SecurityConfig, SecurityTier, fallback_tiers, relax_to, tier_description


@dataclass
class FallbackResult:
    container_id: str
    security: SecurityConfig
    original_tier: SecurityTier
    attempts: list[str] = field(default_factory=list)

    @property
    def relaxed(self) -> bool:
        return self.security.tier != self.original_tier


class TierFallback:
    """Try a container at its configured tier, then at each weaker one.

    A create failure moves straight to the next tier. Once a container exists,
    any failure before it is running (start error, cancellation, lookup
    error) removes it again. Only create and start errors lead to demotion;
    demotion stops when ``auto_relax`` is off or Compat has failed, and the
    last runtime error is then re-raised.
    """

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    def _discard(self, container_id: str) -> None:
        # The caller's context may be the reason we are here.
        ctx = OperationContext(CLEANUP_TIMEOUT_SECONDS)
        try:
            self.runtime.remove_container(ctx, container_id)
        except ContainerRuntimeError as exc:
            logger.warning("Failed to remove container {} after failed attempt: {}", container_id[:12], exc)

    def _start_or_discard(self, ctx: OperationContext, container_id: str) -> None:
        try:
            self.runtime.start_container(ctx, container_id)
        except BaseException:
            self._discard(container_id)
            raise

    def run(self, ctx: OperationContext, cfg: ContainerConfig) -> FallbackResult:
        original = cfg.security.tier
        security = cfg.security
        attempts: list[str] = []
        last_error: Optional[ContainerRuntimeError] = None
        for tier in fallback_tiers(original):
            if tier != original:
                if not security.effective_auto_relax():
                    break
                logger.warning(
                    "Container {} failed at tier {} ({}); retrying at {}",
                    cfg.name,
                    security.tier.value,
                    last_error,
                    tier.value,
                )
                security = relax_to(security, tier)
            ctx.check(f"create container {cfg.name}")
            attempts.append(tier.value)
            try:
                container_id = self.runtime.create_container(ctx, replace(cfg, security=security))
                self._start_or_discard(ctx, container_id)
            except (ContainerCreateError, ContainerStartError) as exc:
                last_error = exc
                continue
            if tier != original:
                logger.warning(
                    "Container {} started at relaxed security tier: {}",
                    cfg.name,
                    tier_description(tier),
                )
            return FallbackResult(
                container_id=container_id,
                security=security,
                original_tier=original,
                attempts=attempts,
            )

        assert last_error is not None
        logger.error("Container {} failed at tier {}: {}", cfg.name, security.tier.value, last_error)
        raise last_error
