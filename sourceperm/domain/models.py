"""
Domain models for sources, permission policies and capabilities.

Everything here is a plain Pydantic record. Policies and rules are always
in normalized form; raw on-disk shapes are handled by
sourceperm.permission.policy and never reach these models.
"""

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class SourceType(str, Enum):
    """Source type enumeration."""

    MCP = "mcp"
    API = "api"
    LOCAL = "local"


class Source(BaseModel):
    """
    A configured external integration attached to a workspace.

    Owned by the source registry; this package only reads it.
    """

    model_config = ConfigDict(frozen=True)

    slug: str
    type: SourceType
    name: str
    tagline: str | None = None

    # mcp
    transport: str | None = None  # "http", "sse" or "stdio"
    url: str | None = None
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)

    # api / local
    base_url: str | None = None
    path: str | None = None

    connection_error: str | None = None
    last_tested_at: int | None = None  # epoch milliseconds
    folder_path: str | None = None

    @property
    def endpoint(self) -> str | None:
        """URL, base URL or filesystem path, depending on type."""
        if self.type == SourceType.MCP:
            return self.url
        if self.type == SourceType.API:
            return self.base_url
        return self.path

    @property
    def is_live(self) -> bool:
        """Whether the source exposes a discoverable capability list."""
        return self.type == SourceType.MCP

    @property
    def is_stdio(self) -> bool:
        return self.type == SourceType.MCP and self.transport == "stdio"

    def connection_signature(self) -> tuple[Any, ...]:
        """Fields whose change invalidates a discovered capability list."""
        return (self.type, self.transport, self.url, self.command, self.args)

    @classmethod
    def from_config(
        cls, raw: dict[str, Any], folder_path: str | None = None, slug: str | None = None
    ) -> "Source":
        """
        Build a Source from an on-disk config.json record.

        Args:
            raw: Parsed config record ({name, type, mcp: {...}, api: {...}, local: {...}})
            folder_path: Source folder on disk
            slug: Fallback slug when the record has none (usually the folder name)
        """
        mcp = raw.get("mcp") or {}
        api = raw.get("api") or {}
        local = raw.get("local") or {}
        resolved_slug = raw.get("slug") or slug
        if not resolved_slug:
            raise ValueError("Source config has no slug")

        return cls(
            slug=resolved_slug,
            type=SourceType(raw["type"]),
            name=raw.get("name") or resolved_slug,
            tagline=raw.get("tagline"),
            transport=mcp.get("transport"),
            url=mcp.get("url"),
            command=mcp.get("command"),
            args=tuple(mcp.get("args") or ()),
            env=dict(mcp.get("env") or {}),
            headers=dict(mcp.get("headers") or {}),
            base_url=api.get("baseUrl"),
            path=local.get("path"),
            connection_error=raw.get("connectionError"),
            last_tested_at=raw.get("lastTestedAt"),
            folder_path=folder_path,
        )


class Rule(BaseModel):
    """Normalized pattern rule. Comment is always present, possibly None."""

    model_config = ConfigDict(frozen=True)

    pattern: str
    comment: str | None = None


class ApiRule(BaseModel):
    """Normalized API endpoint rule."""

    model_config = ConfigDict(frozen=True)

    method: str
    path: str
    comment: str | None = None

    @property
    def display(self) -> str:
        return f"{self.method} {self.path}"


class PermissionPolicy(BaseModel):
    """Permission policy of a single source."""

    model_config = ConfigDict(frozen=True)

    blocked_tools: tuple[Rule, ...] = ()
    allowed_bash_patterns: tuple[Rule, ...] = ()
    allowed_api_endpoints: tuple[ApiRule, ...] = ()
    allowed_mcp_patterns: tuple[Rule, ...] = ()

    @classmethod
    def empty(cls) -> "PermissionPolicy":
        return cls()

    @property
    def rule_count(self) -> int:
        return (
            len(self.blocked_tools)
            + len(self.allowed_bash_patterns)
            + len(self.allowed_api_endpoints)
            + len(self.allowed_mcp_patterns)
        )


class ToolCapability(BaseModel):
    """A tool exposed by a live source."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tool"] = "tool"
    name: str
    description: str = ""


class CommandCapability(BaseModel):
    """A shell command."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["command"] = "command"
    command: str

    @property
    def program(self) -> str:
        parts = self.command.split()
        return parts[0] if parts else ""


class ApiCapability(BaseModel):
    """An HTTP API endpoint."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["api"] = "api"
    method: str
    path: str


Capability = Union[ToolCapability, CommandCapability, ApiCapability]


class Grade(str, Enum):
    """Effective permission grade of a capability."""

    ALLOWED = "allowed"
    BLOCKED = "blocked"
    REQUIRES_PERMISSION = "requires-permission"


class ResolvedCapability(BaseModel):
    """A capability together with its computed grade."""

    model_config = ConfigDict(frozen=True)

    capability: Capability = Field(discriminator="kind")
    grade: Grade


class RuleType(str, Enum):
    """Rule type column of a permission row."""

    TOOL = "tool"
    BASH = "bash"
    API = "api"
    MCP = "mcp"


class PermissionRow(BaseModel):
    """Display row for a single policy rule."""

    model_config = ConfigDict(frozen=True)

    access: Literal["allowed", "blocked"]
    type: RuleType
    pattern: str
    comment: str | None = None


class ToolRow(BaseModel):
    """Display row for a discovered tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    permission: Grade


class WorkspaceSettings(BaseModel):
    """Workspace settings relevant to sources."""

    model_config = ConfigDict(populate_by_name=True)

    local_mcp_enabled: bool = Field(default=True, alias="localMcpEnabled")


class McpToolsResult(BaseModel):
    """Envelope returned by a live discovery adapter."""

    success: bool
    tools: list[dict[str, Any]] | None = None
    error: str | None = None


__all__ = [
    "SourceType",
    "Source",
    "Rule",
    "ApiRule",
    "PermissionPolicy",
    "ToolCapability",
    "CommandCapability",
    "ApiCapability",
    "Capability",
    "Grade",
    "ResolvedCapability",
    "RuleType",
    "PermissionRow",
    "ToolRow",
    "WorkspaceSettings",
    "McpToolsResult",
]
