"""
File-backed source registry.

Workspace layout:

    <root>/<workspace_id>/settings.json            {"localMcpEnabled": true}
    <root>/<workspace_id>/sources/<slug>/config.json
    <root>/<workspace_id>/sources/<slug>/permissions.json
    <root>/<workspace_id>/sources/<slug>/guide.md
"""

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx

from sourceperm.config.settings import settings
from sourceperm.discovery.mcp_client import BaseMcpClient, McpHttpClient, McpStdioClient
from sourceperm.domain.models import McpToolsResult, Source, WorkspaceSettings
from sourceperm.errors import PolicyParseError, SourceConnectionError, SourceNotFoundError
from sourceperm.utils.logging import get_logger

logger = get_logger(__name__)

CONFIG_FILE = "config.json"
PERMISSIONS_FILE = "permissions.json"
GUIDE_FILE = "guide.md"
SETTINGS_FILE = "settings.json"


class FileSourceRegistry:
    """
    Reads sources of each workspace from a directory tree.

    Responsibilities:
    - Scan source folders and parse config.json
    - Read permissions.json records
    - Run live tool discovery through the MCP clients
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else settings.workspaces_root

    def workspace_dir(self, workspace_id: str) -> Path:
        return self.root / workspace_id

    def sources_dir(self, workspace_id: str) -> Path:
        return self.workspace_dir(workspace_id) / "sources"

    def source_dir(self, workspace_id: str, slug: str) -> Path:
        return self.sources_dir(workspace_id) / slug

    def scan_sources(self, workspace_id: str) -> list[Source]:
        """
        Scan all source folders of a workspace.

        Folders without a readable config.json are skipped.

        Returns:
            Sources sorted by slug
        """
        sources_dir = self.sources_dir(workspace_id)
        if not sources_dir.is_dir():
            return []

        sources: list[Source] = []
        for folder in sorted(p for p in sources_dir.iterdir() if p.is_dir()):
            config_path = folder / CONFIG_FILE
            if not config_path.is_file():
                continue
            try:
                raw = self._read_json(config_path)
                if not isinstance(raw, dict):
                    raise ValueError("config must be an object")
                sources.append(
                    Source.from_config(raw, folder_path=str(folder), slug=folder.name)
                )
            except (OSError, ValueError, KeyError) as e:
                logger.warning(
                    "source_config_skipped",
                    workspace_id=workspace_id,
                    folder=folder.name,
                    error=str(e),
                )
        return sources

    def find_source(self, workspace_id: str, slug: str) -> Source:
        for source in self.scan_sources(workspace_id):
            if source.slug == slug:
                return source
        raise SourceNotFoundError(f"Source {slug} not found in workspace {workspace_id}")

    async def get_sources(self, workspace_id: str) -> list[Source]:
        return await asyncio.to_thread(self.scan_sources, workspace_id)

    async def get_source_permissions_config(
        self, workspace_id: str, slug: str
    ) -> dict[str, Any] | None:
        path = self.source_dir(workspace_id, slug) / PERMISSIONS_FILE
        if not path.is_file():
            return None
        try:
            return await asyncio.to_thread(self._read_json, path)
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError are both ValueErrors
            raise PolicyParseError(f"Invalid JSON in {path.name} for {slug}: {e}") from e

    async def get_workspace_settings(self, workspace_id: str) -> WorkspaceSettings:
        path = self.workspace_dir(workspace_id) / SETTINGS_FILE
        if not path.is_file():
            return WorkspaceSettings()
        return WorkspaceSettings.model_validate(await asyncio.to_thread(self._read_json, path))

    async def get_mcp_tools(self, workspace_id: str, slug: str) -> McpToolsResult:
        try:
            source = await asyncio.to_thread(self.find_source, workspace_id, slug)
        except SourceNotFoundError as e:
            return McpToolsResult(success=False, error=e.message)

        if source.is_stdio:
            workspace = await self.get_workspace_settings(workspace_id)
            if not workspace.local_mcp_enabled:
                return McpToolsResult(
                    success=False,
                    error="Local MCP servers are disabled for this workspace",
                )

        try:
            client = self._client_for(source)
            tools = await client.list_tools()
        except SourceConnectionError as e:
            return McpToolsResult(success=False, error=e.message)
        except (httpx.HTTPError, OSError) as e:
            return McpToolsResult(success=False, error=f"Failed to load tools: {e}")

        return McpToolsResult(success=True, tools=tools)

    def _client_for(self, source: Source) -> BaseMcpClient:
        if source.is_stdio:
            if not source.command:
                raise SourceConnectionError(f"Source {source.slug} has no command configured")
            return McpStdioClient(
                source.command,
                source.args,
                env=source.env,
                cwd=source.folder_path,
            )
        if not source.url:
            raise SourceConnectionError(f"Source {source.slug} has no URL configured")
        return McpHttpClient(source.url, headers=source.headers)

    @staticmethod
    def _read_json(path: Path) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)


__all__ = [
    "FileSourceRegistry",
    "CONFIG_FILE",
    "PERMISSIONS_FILE",
    "GUIDE_FILE",
    "SETTINGS_FILE",
]
