"""
Source registry contract.

The registry owns source storage. This package only reads through it.
"""

from typing import Any, Protocol, runtime_checkable

from sourceperm.domain.models import McpToolsResult, Source, WorkspaceSettings


@runtime_checkable
class SourceRegistry(Protocol):
    """Read access to the sources of a workspace."""

    async def get_sources(self, workspace_id: str) -> list[Source]:
        """All sources of the workspace."""
        ...

    async def get_source_permissions_config(
        self, workspace_id: str, slug: str
    ) -> dict[str, Any] | None:
        """Raw policy record of a source, or None when it has none."""
        ...

    async def get_mcp_tools(self, workspace_id: str, slug: str) -> McpToolsResult:
        """Query a live source for its current tool list."""
        ...

    async def get_workspace_settings(self, workspace_id: str) -> WorkspaceSettings:
        ...


__all__ = ["SourceRegistry"]
