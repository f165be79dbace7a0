"""Domain models for directories, grants and change notifications."""

from dirsync.models.directory import (
    AdminRemovalRecord,
    Directory,
    Exclusion,
    Grant,
    Member,
)
from dirsync.models.events import (
    ChangeEvent,
    EventKind,
    RawExclusionChange,
    RawMemberJoin,
    RawMemberLeave,
    RawMemberUpdate,
    RawNotification,
)

__all__ = [
    "AdminRemovalRecord",
    "ChangeEvent",
    "Directory",
    "EventKind",
    "Exclusion",
    "Grant",
    "Member",
    "RawExclusionChange",
    "RawMemberJoin",
    "RawMemberLeave",
    "RawMemberUpdate",
    "RawNotification",
]
