"""dirsync — cross-directory membership synchronization engine."""

__version__ = "0.1.0"
