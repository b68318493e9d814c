"""
Live synchronization of source permission state.
"""

from sourceperm.sync.controller import SyncController, ViewListener
from sourceperm.sync.state import (
    PathState,
    PermissionsView,
    Phase,
    SelectionContext,
    TERMINAL_PHASES,
)

__all__ = [
    "SyncController",
    "ViewListener",
    "PathState",
    "PermissionsView",
    "Phase",
    "SelectionContext",
    "TERMINAL_PHASES",
]
