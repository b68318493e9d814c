"""
Selection state and the snapshot handed to the display layer.
"""

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from sourceperm.domain.models import (
    PermissionPolicy,
    PermissionRow,
    ResolvedCapability,
    Source,
    ToolCapability,
    ToolRow,
    WorkspaceSettings,
)
from sourceperm.errors import ErrorInfo


class Phase(str, Enum):
    """
    Phase of one asynchronous path.

    policy:       IDLE -> LOADING -> READY | ERROR
    capabilities: IDLE -> DISCOVERING -> READY | ERROR, or UNSUPPORTED
    """

    IDLE = "idle"
    LOADING = "loading"
    DISCOVERING = "discovering"
    READY = "ready"
    ERROR = "error"
    UNSUPPORTED = "unsupported"


TERMINAL_PHASES = frozenset({Phase.READY, Phase.ERROR, Phase.UNSUPPORTED})


class PathState(BaseModel):
    """Phase of a path plus what went wrong, if anything."""

    model_config = ConfigDict(frozen=True)

    phase: Phase = Phase.IDLE
    error: ErrorInfo | None = None
    warning: ErrorInfo | None = None

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def in_flight(self) -> bool:
        return self.phase in (Phase.LOADING, Phase.DISCOVERING)


class PermissionsView(BaseModel):
    """
    Immutable snapshot of the active selection.

    resolved and tool_rows are only populated once both the policy path and
    the capability path are terminal. permission_rows follow the policy
    alone, so they render even when discovery fails.
    """

    model_config = ConfigDict(frozen=True)

    slug: str | None = None
    source: Source | None = None
    selection_error: ErrorInfo | None = None
    policy_state: PathState = Field(default_factory=PathState)
    capability_state: PathState = Field(default_factory=PathState)
    policy: PermissionPolicy | None = None
    permission_rows: list[PermissionRow] = Field(default_factory=list)
    resolved: list[ResolvedCapability] = Field(default_factory=list)
    tool_rows: list[ToolRow] = Field(default_factory=list)
    local_mcp_disabled: bool = False
    ready: bool = False

    @property
    def loading(self) -> bool:
        return self.policy_state.in_flight or self.capability_state.in_flight


@dataclass
class SelectionContext:
    """
    Mutable state of one selection, owned by exactly one controller.

    Each path remembers the generation of its latest request; a completion
    carrying any other generation is stale.
    """

    workspace_id: str
    slug: str
    source_token: int = 0
    settings_token: int = 0
    policy_token: int = 0
    capability_token: int = 0

    source: Source | None = None
    selection_error: ErrorInfo | None = None
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)

    policy: PermissionPolicy | None = None
    policy_state: PathState = field(default_factory=PathState)

    capabilities: list[ToolCapability] | None = None
    capability_state: PathState = field(default_factory=PathState)

    def token_for(self, path: str) -> int:
        return getattr(self, f"{path}_token")


__all__ = [
    "Phase",
    "TERMINAL_PHASES",
    "PathState",
    "PermissionsView",
    "SelectionContext",
]
