"""Error taxonomy for the synchronization engine.

- ``NotFoundError``: a principal, grant or directory is missing. External state
  is authoritative, so callers treat this as a skip.
- ``TransientError`` / ``RateLimitedError``: service or network failures. These
  are the only errors the retry engine retries.
- ``UnauthorizedError`` / ``ConfigError``: the engine is not allowed to act or
  its static configuration is inconsistent. Fatal at startup.
- ``PartialBatchFailure``: some entities in a sweep or fan-out failed while the
  rest completed.
"""

from __future__ import annotations

from dataclasses import dataclass


class DirSyncError(Exception):
    """Base class for all engine errors."""


class NotFoundError(DirSyncError):
    """A principal, grant or directory does not exist on the service."""


class UnknownGrantError(NotFoundError):
    """A primary grant has no entry in the group mapping."""

    def __init__(self, grant_id: str):
        super().__init__(f"No group mapping for primary grant {grant_id}")
        self.grant_id = grant_id


class TransientError(DirSyncError):
    """A retryable failure talking to the directory service."""


class RateLimitedError(TransientError):
    """The directory service asked us to slow down."""

    def __init__(self, message: str = "Rate limited", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class UnauthorizedError(DirSyncError):
    """The service rejected our credentials or the action is forbidden."""


class ConfigError(DirSyncError):
    """Static configuration is inconsistent or references missing objects."""

    def __init__(self, issues: list[str] | str):
        if isinstance(issues, str):
            issues = [issues]
        self.issues = list(issues)
        super().__init__("; ".join(self.issues) or "Invalid configuration")


class SelectionError(DirSyncError):
    """A selection submitted from the presentation surface is invalid."""


@dataclass
class EntityFailure:
    """One entity that failed during a batch."""

    directory_id: str
    principal_id: str
    error: str

    def __str__(self) -> str:
        who = self.principal_id or "*"
        return f"{who}@{self.directory_id}: {self.error}"


class PartialBatchFailure(DirSyncError):
    """One or more entities failed while the rest of the batch completed."""

    def __init__(self, failures: list[EntityFailure]):
        self.failures = list(failures)
        super().__init__(f"{len(self.failures)} entity operation(s) failed")
