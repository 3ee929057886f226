"""Utility modules for buildctl-mcp."""

from .locks import ReadWriteLock
from .project import find_project_root

__all__ = [
    "ReadWriteLock",
    "find_project_root",
]
