"""Startup validation for the engine configuration.

Two gates:
1. Static: the mapping tables are internally consistent (no ambiguous
   reverse lookups, no marker grant doubling as a group grant, sane timing).
2. Live: every directory and grant the configuration names actually exists
   on the directory service.

Errors from either gate are fatal: the engine refuses to start before any
mutation is issued.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from dirsync.config.loader import SyncConfig
from dirsync.errors import ConfigError, DirSyncError

if TYPE_CHECKING:
    from dirsync.directory.base import DirectoryService


class Severity(Enum):
    ERROR = "error"  # Blocks startup
    WARNING = "warning"  # Suspicious but runnable


@dataclass
class ValidationIssue:
    """A single problem found in the configuration."""

    severity: Severity
    code: str
    message: str
    path: str = ""

    def __str__(self) -> str:
        where = f" ({self.path})" if self.path else ""
        return f"[{self.code}] {self.message}{where}"


@dataclass
class ConfigValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    def summary(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return f"[{status}] {len(self.errors)} error(s), {len(self.warnings)} warning(s)"

    def error(self, code: str, message: str, path: str = "") -> None:
        self.issues.append(ValidationIssue(Severity.ERROR, code, message, path))

    def warn(self, code: str, message: str, path: str = "") -> None:
        self.issues.append(ValidationIssue(Severity.WARNING, code, message, path))

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ConfigError([str(i) for i in self.errors])


# ---------------------------------------------------------------------------
# Static gate
# ---------------------------------------------------------------------------


def validate_config(config: SyncConfig) -> ConfigValidationResult:
    """Check the configuration tables for internal consistency."""
    result = ConfigValidationResult()

    _check_primary(config, result)
    _check_groups(config, result)
    _check_reverse_mapping(config, result)
    _check_selection_sets(config, result)
    _check_timing(config, result)

    return result


def _check_primary(config: SyncConfig, result: ConfigValidationResult) -> None:
    primary = config.primary
    if not primary.directory_id:
        result.error("PRIMARY_ID_MISSING", "Primary directory id is empty.", "primary.directory_id")
    if not primary.member_grant_id:
        result.error("MEMBER_GRANT_MISSING", "Main-membership grant id is empty.", "primary.member_grant_id")
    if not primary.pending_grant_id:
        result.warn(
            "PENDING_GRANT_MISSING",
            "No pending grant configured; pending status will not be cleared.",
            "primary.pending_grant_id",
        )
    elif primary.pending_grant_id == primary.member_grant_id:
        result.error(
            "MARKER_COLLISION",
            "Pending grant and main-membership grant must differ.",
            "primary.pending_grant_id",
        )


def _check_groups(config: SyncConfig, result: ConfigValidationResult) -> None:
    if not config.groups:
        result.warn("NO_GROUPS", "No group mappings configured; nothing will be synchronized.", "groups")
        return

    markers = {config.primary.member_grant_id, config.primary.pending_grant_id} - {""}
    seen: set[str] = set()
    for i, group in enumerate(config.groups):
        path = f"groups[{i}]"
        if group.grant_id in seen:
            result.error("DUPLICATE_GROUP_GRANT", f"Group grant {group.grant_id} is mapped twice.", path)
        seen.add(group.grant_id)

        if group.grant_id in markers:
            result.error(
                "MARKER_COLLISION",
                f"Group grant {group.grant_id} is also a marker grant.",
                path,
            )
        if not group.replicas:
            result.warn("GROUP_WITHOUT_REPLICAS", f"Group '{group.name}' maps to no replica.", path)
        if config.primary.directory_id in group.replicas:
            result.error(
                "PRIMARY_AS_REPLICA",
                "The primary directory cannot also be a replica.",
                f"{path}.replicas",
            )
        for directory_id, grant_id in group.replicas.items():
            if not grant_id:
                result.error(
                    "REPLICA_GRANT_MISSING",
                    f"Group '{group.name}' has an empty grant id for replica {directory_id}.",
                    f"{path}.replicas.{directory_id}",
                )


def _check_reverse_mapping(config: SyncConfig, result: ConfigValidationResult) -> None:
    """Every replica grant may be authorized by at most one primary grant."""
    owners: dict[tuple[str, str], str] = {}
    for group in config.groups:
        for directory_id, grant_id in group.replicas.items():
            key = (directory_id, grant_id)
            owner = owners.get(key)
            if owner is not None and owner != group.grant_id:
                result.error(
                    "AMBIGUOUS_REVERSE_MAPPING",
                    (
                        f"Replica grant {grant_id} in {directory_id} is mapped from both "
                        f"{owner} and {group.grant_id}."
                    ),
                    f"groups.replicas.{directory_id}",
                )
            owners.setdefault(key, group.grant_id)


def _check_selection_sets(config: SyncConfig, result: ConfigValidationResult) -> None:
    group_grants = {g.grant_id for g in config.groups}
    markers = {config.primary.member_grant_id, config.primary.pending_grant_id} - {""}
    seen_sets: set[str] = set()

    for i, selection_set in enumerate(config.selection_sets):
        path = f"selection_sets[{i}]"
        if selection_set.id in seen_sets:
            result.error("DUPLICATE_SELECTION_SET", f"Selection set '{selection_set.id}' is defined twice.", path)
        seen_sets.add(selection_set.id)

        if not selection_set.grants:
            result.warn("EMPTY_SELECTION_SET", f"Selection set '{selection_set.id}' has no grants.", path)

        seen_grants: set[str] = set()
        for j, grant in enumerate(selection_set.grants):
            grant_path = f"{path}.grants[{j}]"
            if grant.grant_id in seen_grants:
                result.error(
                    "DUPLICATE_SELECTION_GRANT",
                    f"Grant {grant.grant_id} appears twice in '{selection_set.id}'.",
                    grant_path,
                )
            seen_grants.add(grant.grant_id)
            if selection_set.directory_id == config.primary.directory_id and (
                grant.grant_id in group_grants or grant.grant_id in markers
            ):
                result.error(
                    "SELECTION_GRANT_MANAGED",
                    f"Grant {grant.grant_id} in '{selection_set.id}' is already managed by group sync.",
                    grant_path,
                )
            if not grant.name:
                result.warn("SELECTION_GRANT_UNNAMED", f"Grant {grant.grant_id} has no display name.", grant_path)


def _check_timing(config: SyncConfig, result: ConfigValidationResult) -> None:
    timing = config.timing
    if timing.retry_max_attempts < 1:
        result.error("RETRY_ATTEMPTS", "retry_max_attempts must be at least 1.", "timing.retry_max_attempts")
    if timing.sweep_batch_size < 1:
        result.error("SWEEP_BATCH_SIZE", "sweep_batch_size must be at least 1.", "timing.sweep_batch_size")
    for name in (
        "debounce_window",
        "retry_initial_delay",
        "expulsion_attribution_window",
        "sweep_batch_pause",
    ):
        if getattr(timing, name) < 0:
            result.error("NEGATIVE_DURATION", f"{name} must not be negative.", f"timing.{name}")
    if timing.effective_dedup_window < 0:
        result.error("NEGATIVE_DURATION", "dedup_window must not be negative.", "timing.dedup_window")
    if timing.sweep_interval <= 0:
        result.error("SWEEP_INTERVAL", "sweep_interval must be positive.", "timing.sweep_interval")


# ---------------------------------------------------------------------------
# Live gate
# ---------------------------------------------------------------------------


async def verify_against_service(
    config: SyncConfig, service: DirectoryService
) -> ConfigValidationResult:
    """Check that every configured directory and grant exists on the service."""
    result = ConfigValidationResult()
    primary = config.primary

    required: list[tuple[str, str, str]] = [
        (primary.directory_id, primary.member_grant_id, "primary.member_grant_id"),
    ]
    if primary.pending_grant_id:
        required.append((primary.directory_id, primary.pending_grant_id, "primary.pending_grant_id"))
    for i, group in enumerate(config.groups):
        required.append((primary.directory_id, group.grant_id, f"groups[{i}].grant_id"))
        for directory_id, grant_id in group.replicas.items():
            required.append((directory_id, grant_id, f"groups[{i}].replicas.{directory_id}"))
    for i, selection_set in enumerate(config.selection_sets):
        for j, grant in enumerate(selection_set.grants):
            required.append((selection_set.directory_id, grant.grant_id, f"selection_sets[{i}].grants[{j}]"))

    directories = {directory_id for directory_id, _, _ in required}
    missing_directories: set[str] = set()
    for directory_id in sorted(directories):
        try:
            directory = await service.fetch_directory(directory_id)
        except DirSyncError as e:
            result.error("SERVICE_UNREACHABLE", f"Could not fetch directory {directory_id}: {e}")
            missing_directories.add(directory_id)
            continue
        if directory is None:
            result.error("DIRECTORY_NOT_FOUND", f"Directory {directory_id} does not exist.")
            missing_directories.add(directory_id)

    for directory_id, grant_id, path in required:
        if directory_id in missing_directories:
            continue
        try:
            grant = await service.fetch_grant(directory_id, grant_id)
        except DirSyncError as e:
            result.error("SERVICE_UNREACHABLE", f"Could not fetch grant {grant_id}: {e}", path)
            continue
        if grant is None:
            result.error("GRANT_NOT_FOUND", f"Grant {grant_id} does not exist in {directory_id}.", path)

    return result
