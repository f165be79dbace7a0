"""The directory service interface the engine consumes.

Every call may be rate limited or fail transiently; implementations raise
``TransientError``/``RateLimitedError`` for those and never retry themselves.
Fetches return ``None`` for missing objects; mutations raise ``NotFoundError``.
Mutations are idempotent on the service side: adding a grant the principal
already holds, or lifting an exclusion that does not exist, is not an error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from dirsync.models.directory import AdminRemovalRecord, Directory, Exclusion, Grant, Member


class DirectoryService(ABC):
    """Async client for the external directory service."""

    # -- reads ---------------------------------------------------------------

    @abstractmethod
    async def fetch_directory(self, directory_id: str) -> Optional[Directory]:
        ...

    @abstractmethod
    async def fetch_principal(self, directory_id: str, principal_id: str) -> Optional[Member]:
        ...

    @abstractmethod
    async def fetch_grant(self, directory_id: str, grant_id: str) -> Optional[Grant]:
        ...

    @abstractmethod
    async def list_principals(self, directory_id: str) -> list[Member]:
        """Return every member of the directory (all pages)."""

    @abstractmethod
    async def list_exclusions(self, directory_id: str) -> list[Exclusion]:
        ...

    @abstractmethod
    async def fetch_exclusion(self, directory_id: str, principal_id: str) -> Optional[Exclusion]:
        ...

    @abstractmethod
    async def list_admin_removals(self, directory_id: str, limit: int = 5) -> list[AdminRemovalRecord]:
        """Return the most recent administrative removals, newest first."""

    # -- mutations -----------------------------------------------------------

    @abstractmethod
    async def add_grant(self, directory_id: str, principal_id: str, grant_id: str, reason: str = "") -> None:
        ...

    @abstractmethod
    async def remove_grant(self, directory_id: str, principal_id: str, grant_id: str, reason: str = "") -> None:
        ...

    @abstractmethod
    async def add_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        ...

    @abstractmethod
    async def remove_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        ...

    @abstractmethod
    async def remove_principal(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        """Expel the principal from the directory."""

    async def aclose(self) -> None:
        """Release any underlying resources."""
