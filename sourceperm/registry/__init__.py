"""
Source registry access.

This package provides:
- The registry contract (base.py)
- A file-backed registry (file.py)
- The source change feed (events.py)
- Source folder watching (watcher.py)
"""

from .base import SourceRegistry
from .events import SourceChangeFeed, SourcesListener
from .file import FileSourceRegistry
from .watcher import SourceFolderWatcher, WorkspaceSourceWatch

__all__ = [
    "SourceRegistry",
    "SourceChangeFeed",
    "SourcesListener",
    "FileSourceRegistry",
    "SourceFolderWatcher",
    "WorkspaceSourceWatch",
]
