"""
Connection details of a source, as shown next to its permissions.
"""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from sourceperm.domain.models import Source, SourceType, WorkspaceSettings
from sourceperm.registry.file import CONFIG_FILE, GUIDE_FILE, PERMISSIONS_FILE

MINUTE_MS = 60_000
HOUR_MS = 3_600_000
DAY_MS = 86_400_000


class ConnectionKind(str, Enum):
    MCP_STDIO = "mcp-stdio"
    MCP = "mcp"
    API = "api"
    LOCAL = "local"


class RelativeTime(BaseModel):
    """Coarse age of a timestamp: never, just-now, minutes, hours or days."""

    model_config = {"frozen": True}

    unit: str
    count: int = 0


def source_endpoint(source: Source) -> str | None:
    return source.endpoint or None


def endpoint_opens_externally(endpoint: str) -> bool:
    """True for web URLs, False for filesystem paths."""
    return endpoint.startswith(("http://", "https://"))


def connection_kind(source: Source) -> ConnectionKind:
    if source.type == SourceType.MCP:
        return ConnectionKind.MCP_STDIO if source.is_stdio else ConnectionKind.MCP
    if source.type == SourceType.API:
        return ConnectionKind.API
    return ConnectionKind.LOCAL


def local_mcp_disabled(source: Source, workspace: WorkspaceSettings) -> bool:
    """A stdio server in a workspace that has local MCP servers turned off."""
    return source.is_stdio and not workspace.local_mcp_enabled


def relative_time(last_tested_at: int | None, now: int) -> RelativeTime:
    """
    Bucket the age of an epoch-millisecond timestamp.

    Args:
        last_tested_at: Timestamp in ms, or None when never tested
        now: Current time in ms
    """
    if not last_tested_at:
        return RelativeTime(unit="never")

    diff = now - last_tested_at
    minutes = diff // MINUTE_MS
    hours = diff // HOUR_MS
    days = diff // DAY_MS

    if minutes < 1:
        return RelativeTime(unit="just-now")
    if minutes < 60:
        return RelativeTime(unit="minutes", count=minutes)
    if hours < 24:
        return RelativeTime(unit="hours", count=hours)
    return RelativeTime(unit="days", count=days)


def source_files(source: Source) -> dict[str, Path]:
    """Editable files of a source folder (empty when the folder is unknown)."""
    if not source.folder_path:
        return {}
    folder = Path(source.folder_path)
    return {
        "config": folder / CONFIG_FILE,
        "permissions": folder / PERMISSIONS_FILE,
        "guide": folder / GUIDE_FILE,
    }


__all__ = [
    "ConnectionKind",
    "RelativeTime",
    "source_endpoint",
    "endpoint_opens_externally",
    "connection_kind",
    "local_mcp_disabled",
    "relative_time",
    "source_files",
]
