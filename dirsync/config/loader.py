"""Configuration-as-code: the static tables the engine runs against.

The group mapping and selection sets are loaded once at startup and are
read-only for the rest of the run. Changing them requires a restart followed
by a full reconciliation sweep.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from dirsync.errors import ConfigError
from dirsync.utils.log import LoggingOptions

CONFIG_ENV = "DIRSYNC_CONFIG"
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class PrimaryConfig:
    """The authoritative directory and its marker grants."""

    directory_id: str
    member_grant_id: str
    pending_grant_id: str = ""


@dataclass
class GroupConfig:
    """One row of the group mapping: primary grant → {replica: grant}."""

    name: str
    grant_id: str
    replicas: dict[str, str] = field(default_factory=dict)


@dataclass
class SelectableGrant:
    """A grant offered on the selection surface."""

    grant_id: str
    name: str
    category: str = ""
    emoji: str = ""
    description: str = ""


@dataclass
class SelectionSetConfig:
    """A named collection of grants offered together.

    When ``exclusive`` is true the set is an ExclusiveSet: a principal holds
    at most one of its grants. Otherwise the set is opt-in and any subset
    may be held.
    """

    id: str
    directory_id: str
    title: str = ""
    exclusive: bool = True
    grants: list[SelectableGrant] = field(default_factory=list)

    @property
    def grant_ids(self) -> frozenset[str]:
        return frozenset(g.grant_id for g in self.grants)

    def get(self, grant_id: str) -> Optional[SelectableGrant]:
        for grant in self.grants:
            if grant.grant_id == grant_id:
                return grant
        return None


@dataclass
class TimingConfig:
    """Windows, budgets and intervals, all in seconds."""

    debounce_window: float = 1.0
    dedup_window: Optional[float] = None
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    expulsion_attribution_window: float = 5.0
    sweep_interval: float = 3600.0
    sweep_batch_size: int = 10
    sweep_batch_pause: float = 1.0
    sweep_on_startup: bool = True

    @property
    def effective_dedup_window(self) -> float:
        if self.dedup_window is None:
            return self.debounce_window
        return self.dedup_window


@dataclass
class ServiceConfig:
    """How to reach the directory service."""

    base_url: str = ""
    token_env: str = "DIRSYNC_TOKEN"
    timeout: float = 10.0

    @property
    def token(self) -> str:
        return os.environ.get(self.token_env, "")


@dataclass
class SyncConfig:
    """Complete engine configuration."""

    primary: PrimaryConfig
    groups: list[GroupConfig] = field(default_factory=list)
    selection_sets: list[SelectionSetConfig] = field(default_factory=list)
    timing: TimingConfig = field(default_factory=TimingConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    dry_run: bool = False
    logging: LoggingOptions = field(default_factory=LoggingOptions)

    @property
    def replica_directory_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for group in self.groups:
            for directory_id in group.replicas:
                seen.setdefault(directory_id, None)
        return list(seen)

    def selection_set(self, set_id: str) -> Optional[SelectionSetConfig]:
        for selection_set in self.selection_sets:
            if selection_set.id == set_id:
                return selection_set
        return None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None, *, apply_env: bool = True) -> SyncConfig:
    """Load a configuration file.

    Args:
        path: YAML file to read. Falls back to ``$DIRSYNC_CONFIG``.
        apply_env: Overlay ``DIRSYNC_DRY_RUN`` / ``DIRSYNC_BASE_URL``.
    """
    path = path or os.environ.get(CONFIG_ENV)
    if not path:
        raise ConfigError(f"No configuration file given and {CONFIG_ENV} is not set")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e

    config = config_from_dict(data)
    if apply_env:
        apply_env_overrides(config)
    return config


def config_from_dict(data: dict[str, Any]) -> SyncConfig:
    """Build a ``SyncConfig`` from an already-parsed mapping."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    primary_data = data.get("primary")
    if not isinstance(primary_data, dict):
        raise ConfigError("Missing 'primary' section")
    try:
        primary = PrimaryConfig(
            directory_id=_id(primary_data["directory_id"]),
            member_grant_id=_id(primary_data["member_grant_id"]),
            pending_grant_id=_id(primary_data.get("pending_grant_id", "")),
        )
    except KeyError as e:
        raise ConfigError(f"primary: missing required key {e}") from e

    groups = []
    for i, group_data in enumerate(data.get("groups") or []):
        if "grant_id" not in group_data:
            raise ConfigError(f"groups[{i}]: missing required key 'grant_id'")
        groups.append(
            GroupConfig(
                name=str(group_data.get("name", "")),
                grant_id=_id(group_data["grant_id"]),
                replicas={
                    _id(directory_id): _id(grant_id)
                    for directory_id, grant_id in (group_data.get("replicas") or {}).items()
                },
            )
        )

    selection_sets = []
    for i, set_data in enumerate(data.get("selection_sets") or []):
        if "id" not in set_data:
            raise ConfigError(f"selection_sets[{i}]: missing required key 'id'")
        grants = []
        for j, grant_data in enumerate(set_data.get("grants") or []):
            if "grant_id" not in grant_data:
                raise ConfigError(f"selection_sets[{i}].grants[{j}]: missing required key 'grant_id'")
            grants.append(
                SelectableGrant(
                    grant_id=_id(grant_data["grant_id"]),
                    name=str(grant_data.get("name", "")),
                    category=str(grant_data.get("category", "")),
                    emoji=str(grant_data.get("emoji", "")),
                    description=str(grant_data.get("description", "")),
                )
            )
        selection_sets.append(
            SelectionSetConfig(
                id=str(set_data["id"]),
                directory_id=_id(set_data.get("directory_id", primary.directory_id)),
                title=str(set_data.get("title", "")),
                exclusive=bool(set_data.get("exclusive", True)),
                grants=grants,
            )
        )

    timing_data = data.get("timing") or {}
    unknown = set(timing_data) - set(TimingConfig.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"timing: unknown keys {sorted(unknown)}")
    timing = TimingConfig(**timing_data)

    service_data = data.get("service") or {}
    service = ServiceConfig(
        base_url=str(service_data.get("base_url", "")),
        token_env=str(service_data.get("token_env", "DIRSYNC_TOKEN")),
        timeout=float(service_data.get("timeout", 10.0)),
    )

    logging_data = data.get("logging") or {}
    logging_options = LoggingOptions(
        level=str(logging_data.get("level", "INFO")),
        format=str(logging_data.get("format", "text")),
        file=logging_data.get("file"),
    )

    return SyncConfig(
        primary=primary,
        groups=groups,
        selection_sets=selection_sets,
        timing=timing,
        service=service,
        dry_run=bool(data.get("dry_run", False)),
        logging=logging_options,
    )


def apply_env_overrides(config: SyncConfig) -> SyncConfig:
    """Overlay environment variables onto a loaded config (in place)."""
    dry_run = os.environ.get("DIRSYNC_DRY_RUN")
    if dry_run is not None:
        config.dry_run = dry_run.strip().lower() in _TRUTHY
    base_url = os.environ.get("DIRSYNC_BASE_URL")
    if base_url:
        config.service.base_url = base_url
    return config


def _id(value: Any) -> str:
    # Snowflake-style ids are often written unquoted in YAML.
    return "" if value is None else str(value)
