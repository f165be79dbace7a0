"""Configuration loading and startup validation."""

from dirsync.config.loader import (
    GroupConfig,
    PrimaryConfig,
    SelectableGrant,
    SelectionSetConfig,
    ServiceConfig,
    SyncConfig,
    TimingConfig,
    config_from_dict,
    load_config,
)

__all__ = [
    "GroupConfig",
    "PrimaryConfig",
    "SelectableGrant",
    "SelectionSetConfig",
    "ServiceConfig",
    "SyncConfig",
    "TimingConfig",
    "config_from_dict",
    "load_config",
]
