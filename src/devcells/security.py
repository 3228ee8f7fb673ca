"""Container hardening tiers and the security settings they resolve to."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Iterator, Optional

from .constants import DEFAULT_PIDS_LIMIT


class SecurityTier(str, Enum):
    """Named hardening level, ordered from most to least restrictive."""

    HARDENED = "hardened"
    MODERATE = "moderate"
    COMPAT = "compat"


TIER_ORDER: tuple[SecurityTier, ...] = (
    SecurityTier.HARDENED,
    SecurityTier.MODERATE,
    SecurityTier.COMPAT,
)

DEFAULT_TIER = SecurityTier.MODERATE

_TIER_CAP_DROPS: dict[SecurityTier, tuple[str, ...]] = {
    SecurityTier.HARDENED: ("SYS_ADMIN", "SYS_MODULE", "SYS_PTRACE", "NET_ADMIN", "NET_RAW"),
    SecurityTier.MODERATE: ("SYS_ADMIN", "SYS_MODULE"),
    SecurityTier.COMPAT: (),
}

_TIER_DESCRIPTIONS = {
    SecurityTier.HARDENED: "Hardened (drops SYS_ADMIN, SYS_MODULE, SYS_PTRACE, NET_ADMIN, NET_RAW)",
    SecurityTier.MODERATE: "Moderate (drops SYS_ADMIN, SYS_MODULE)",
    SecurityTier.COMPAT: "Compatible (no capability drops, only no-new-privileges and init)",
}


def coerce_tier(value: Any, default: Optional[SecurityTier] = None) -> Optional[SecurityTier]:
    if isinstance(value, SecurityTier):
        return value
    if value is None:
        return default
    try:
        return SecurityTier(str(value).strip().lower())
    except ValueError:
        return default


def tier_cap_drops(tier: SecurityTier) -> list[str]:
    return list(_TIER_CAP_DROPS.get(coerce_tier(tier, DEFAULT_TIER), _TIER_CAP_DROPS[DEFAULT_TIER]))


def next_tier(tier: SecurityTier) -> Optional[SecurityTier]:
    """Return the next less restrictive tier, or None from Compat."""
    idx = TIER_ORDER.index(tier)
    if idx + 1 >= len(TIER_ORDER):
        return None
    return TIER_ORDER[idx + 1]


def fallback_tiers(start: SecurityTier) -> Iterator[SecurityTier]:
    """Yield ``start`` followed by every weaker tier, in order."""
    tier: Optional[SecurityTier] = start
    while tier is not None:
        yield tier
        tier = next_tier(tier)


def tier_description(tier: SecurityTier) -> str:
    return _TIER_DESCRIPTIONS.get(tier, str(tier))


@dataclass
class SecurityConfig:
    """Container security settings.

    Fields left as None fall back to the tier or global default when read
    through the ``effective_*`` accessors, so a config loaded from YAML only
    overrides what the user actually wrote.
    """

    tier: SecurityTier = DEFAULT_TIER
    no_new_privileges: Optional[bool] = None
    init: Optional[bool] = None
    pids_limit: Optional[int] = None
    privileged: Optional[bool] = None
    cap_add: Optional[list[str]] = None
    cap_drop: Optional[list[str]] = None
    auto_relax: Optional[bool] = None
    host_network: Optional[bool] = None
    host_pid: Optional[bool] = None
    host_ipc: Optional[bool] = None
    docker_socket: Optional[bool] = None

    def effective_no_new_privileges(self) -> bool:
        return True if self.no_new_privileges is None else self.no_new_privileges

    def effective_init(self) -> bool:
        return True if self.init is None else self.init

    def effective_pids_limit(self) -> int:
        # 0 means unlimited
        return DEFAULT_PIDS_LIMIT if self.pids_limit is None else self.pids_limit

    def effective_privileged(self) -> bool:
        return bool(self.privileged)

    def effective_auto_relax(self) -> bool:
        return True if self.auto_relax is None else self.auto_relax

    def effective_host_network(self) -> bool:
        return bool(self.host_network)

    def effective_host_pid(self) -> bool:
        return bool(self.host_pid)

    def effective_host_ipc(self) -> bool:
        return bool(self.host_ipc)

    def effective_docker_socket(self) -> bool:
        return bool(self.docker_socket)

    def effective_cap_add(self) -> list[str]:
        return list(self.cap_add or [])

    def effective_cap_drop(self) -> list[str]:
        if self.cap_drop is not None:
            return list(self.cap_drop)
        return tier_cap_drops(self.tier)

    def to_dict(self) -> dict[str, Any]:
        """Serialize set fields only, in the key/value shape of config.yaml."""
        out: dict[str, Any] = {"tier": self.tier.value}
        for f in fields(self):
            if f.name == "tier":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            out[f.name] = list(value) if isinstance(value, list) else value
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityConfig":
        payload = {f.name: data.get(f.name) for f in fields(cls) if f.name != "tier"}
        for key in ("cap_add", "cap_drop"):
            if payload[key] is not None:
                payload[key] = [str(item) for item in payload[key]]
        return cls(tier=coerce_tier(data.get("tier"), DEFAULT_TIER), **payload)


def default_security_config() -> SecurityConfig:
    """Moderate tier with every global default spelled out."""
    return SecurityConfig(
        tier=DEFAULT_TIER,
        no_new_privileges=True,
        init=True,
        pids_limit=DEFAULT_PIDS_LIMIT,
        privileged=False,
        cap_add=[],
        cap_drop=None,
        auto_relax=True,
        host_network=False,
        host_pid=False,
        host_ipc=False,
        docker_socket=False,
    )


def config_for_tier(tier: SecurityTier) -> SecurityConfig:
    cfg = default_security_config()
    cfg.tier = tier
    cfg.cap_drop = tier_cap_drops(tier)
    return cfg


def merge_security_config(base: SecurityConfig, override: SecurityConfig, *, override_tier: bool = True) -> SecurityConfig:
    """Overlay the set fields of ``override`` onto ``base``.

    Lists replace rather than extend.
    """
    result = replace(base)
    if override_tier:
        result.tier = override.tier
    for f in fields(override):
        if f.name == "tier":
            continue
        value = getattr(override, f.name)
        if value is not None:
            setattr(result, f.name, list(value) if isinstance(value, list) else value)
    return result


def relax_to(cfg: SecurityConfig, tier: SecurityTier) -> SecurityConfig:
    """Demote ``cfg`` to ``tier``.

    Explicit overrides survive; the capability drop list is reset to the new
    tier's default because an explicit list would defeat the demotion.
    """
    relaxed = replace(cfg, cap_add=list(cfg.cap_add) if cfg.cap_add is not None else None)
    relaxed.tier = tier
    relaxed.cap_drop = tier_cap_drops(tier)
    return relaxed


@dataclass
class SecurityRelaxation:
    """Report returned when creation only succeeded at a weaker tier."""

    original_tier: SecurityTier
    final_tier: SecurityTier
    config_saved: bool = False
    config_path: Optional[str] = None
    attempts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_tier": self.original_tier.value,
            "final_tier": self.final_tier.value,
            "config_saved": self.config_saved,
            "config_path": self.config_path,
            "attempts": list(self.attempts),
        }
