"""Load process settings and the global/project `config.yaml` documents."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import (
    CONFIG_FILE,
    CONTAINER_PREFIX,
    DATA_DIR_ENV,
    DEFAULT_CPUS,
    DEFAULT_DATA_DIR_NAME,
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_HEARTBEAT_STALE_SECONDS,
    DEFAULT_MEMORY_BYTES,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_WORKTREE_BASE_DIR,
    PROJECT_CONFIG_DIR_NAME,
    WORKTREE_DIR_ENV,
)
from .errors import PersistenceError
from .io_utils import _atomic_write_bytes, _atomic_write_yaml, _load_data_with_error
from .security import (
    SecurityConfig,
    SecurityTier,
    coerce_tier,
    default_security_config,
    merge_security_config,
)


@dataclass(frozen=True)
class Settings:
    """Resolved process-wide settings."""

    data_dir: Path
    worktree_base_dir: Path
    container_prefix: str = CONTAINER_PREFIX
    default_cpus: float = DEFAULT_CPUS
    default_memory_bytes: int = DEFAULT_MEMORY_BYTES
    heartbeat_stale_seconds: float = DEFAULT_HEARTBEAT_STALE_SECONDS
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    @property
    def global_config_path(self) -> Path:
        return self.data_dir / CONFIG_FILE


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    data_dir_raw = str(env.get(DATA_DIR_ENV) or "").strip()
    data_dir = Path(data_dir_raw).expanduser() if data_dir_raw else Path.home() / DEFAULT_DATA_DIR_NAME
    worktree_raw = str(env.get(WORKTREE_DIR_ENV) or "").strip()
    worktree_dir = Path(worktree_raw).expanduser() if worktree_raw else Path(DEFAULT_WORKTREE_BASE_DIR)
    return Settings(data_dir=data_dir, worktree_base_dir=worktree_dir)


def project_config_path(project_dir: Path) -> Path:
    return Path(project_dir) / PROJECT_CONFIG_DIR_NAME / CONFIG_FILE


class SecuritySection(BaseModel):
    """The `security:` block of config.yaml. Absent keys stay None."""

    model_config = ConfigDict(extra="ignore")

    tier: Optional[SecurityTier] = None
    no_new_privileges: Optional[bool] = None
    init: Optional[bool] = None
    pids_limit: Optional[int] = Field(default=None, ge=0)
    privileged: Optional[bool] = None
    cap_add: Optional[list[str]] = None
    cap_drop: Optional[list[str]] = None
    auto_relax: Optional[bool] = None
    host_network: Optional[bool] = None
    host_pid: Optional[bool] = None
    host_ipc: Optional[bool] = None
    docker_socket: Optional[bool] = None

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def to_security_config(self) -> SecurityConfig:
        data = self.model_dump(exclude_none=True, mode="json")
        return SecurityConfig.from_dict(data)


class DockerfileSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    inject: list[str] = Field(default_factory=list)


class CellsConfig(BaseModel):
    """Top-level config.yaml document."""

    model_config = ConfigDict(extra="ignore")

    runtime: Optional[str] = None
    security: SecuritySection = Field(default_factory=SecuritySection)
    dockerfile: DockerfileSection = Field(default_factory=DockerfileSection)


def load_cells_config_file(path: Path) -> Optional[CellsConfig]:
    """Load one config.yaml; a missing, unreadable, or invalid file yields None."""
    if not path.exists():
        return None
    data, err = _load_data_with_error(path, {})
    if err:
        logger.warning("Ignoring unreadable config {}: {}", path, err)
        return None
    try:
        return CellsConfig.model_validate(data)
    except ValidationError as exc:
        logger.warning("Ignoring invalid config {}: {}", path, exc)
        return None


def _apply_section(base: SecurityConfig, section: SecuritySection) -> SecurityConfig:
    return merge_security_config(base, section.to_security_config(), override_tier=section.tier is not None)


def load_security_config(project_dir: Optional[Path], settings: Settings) -> SecurityConfig:
    """Resolve the security config: project file > global file > defaults."""
    cfg = default_security_config()
    global_cfg = load_cells_config_file(settings.global_config_path)
    if global_cfg is not None:
        cfg = _apply_section(cfg, global_cfg.security)
    if project_dir is not None:
        project_cfg = load_cells_config_file(project_config_path(project_dir))
        if project_cfg is not None:
            cfg = _apply_section(cfg, project_cfg.security)
    return cfg


def load_dockerfile_inject(project_dir: Optional[Path], settings: Settings) -> list[str]:
    inject: list[str] = []
    global_cfg = load_cells_config_file(settings.global_config_path)
    if global_cfg is not None and global_cfg.dockerfile.inject:
        inject = list(global_cfg.dockerfile.inject)
    if project_dir is not None:
        project_cfg = load_cells_config_file(project_config_path(project_dir))
        if project_cfg is not None and project_cfg.dockerfile.inject:
            inject = list(project_cfg.dockerfile.inject)
    return inject


RELAXATION_HEADER = """# devcells configuration
# This file was written after container creation only succeeded at a
# weaker security tier. New workstreams in this project start from the
# tier below instead of probing from the top again.
#
# To tighten security, set tier to "hardened" or "moderate".
# To relax further, set tier to "compat" or override specific options."""


def save_project_security_config(project_dir: Path, cfg: SecurityConfig) -> Path:
    """Persist ``cfg`` as the project's security block, keeping other keys.

    Raises:
        PersistenceError: If the file cannot be written.
    """
    path = project_config_path(project_dir)
    existing, err = _load_data_with_error(path, {})
    if err:
        logger.warning("Replacing unreadable project config {}: {}", path, err)
        existing = {}
    document = dict(existing)
    document["security"] = cfg.to_dict()
    try:
        _atomic_write_yaml(path, document, header=RELAXATION_HEADER)
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}: {exc}") from exc
    return path


DEFAULT_CONFIG_YAML = """# devcells configuration

# Commands injected as RUN lines when an image is built for a workstream.
# dockerfile:
#   inject:
#     - "apt-get update && apt-get install -y vim"

security:
  # hardened: drops SYS_ADMIN, SYS_MODULE, SYS_PTRACE, NET_ADMIN, NET_RAW.
  #           May break ping, debuggers (gdb/strace) and some profilers.
  # moderate: drops SYS_ADMIN, SYS_MODULE (default).
  # compat:   no capability drops, only no-new-privileges and init.
  tier: moderate

  no_new_privileges: true
  init: true

  # Maximum number of processes; 0 disables the limit.
  pids_limit: 1024

  # cap_drop:
  #   - SYS_ADMIN
  # cap_add:
  #   - NET_RAW

  # Retry container creation at weaker tiers when it fails, and save the
  # tier that worked to the project's .devcells/config.yaml.
  auto_relax: true

  # The options below defeat container isolation.
  # privileged: false
  # host_network: false
  # host_pid: false
  # host_ipc: false
  # docker_socket: false
"""


def write_default_global_config(settings: Settings) -> bool:
    """Write the commented default config unless one exists. Returns True if written."""
    path = settings.global_config_path
    if path.exists():
        return False
    try:
        _atomic_write_bytes(path, DEFAULT_CONFIG_YAML.encode("utf-8"))
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}: {exc}") from exc
    return True


def parse_tier_option(value: Optional[str]) -> Optional[SecurityTier]:
    if value is None:
        return None
    tier = coerce_tier(value)
    if tier is None:
        raise ValueError(f"Unknown security tier '{value}' (expected hardened, moderate, or compat)")
    return tier
