"""Directory service clients."""

from dirsync.directory.base import DirectoryService
from dirsync.directory.http import HttpDirectoryService
from dirsync.directory.memory import InMemoryDirectoryService

__all__ = ["DirectoryService", "HttpDirectoryService", "InMemoryDirectoryService"]
