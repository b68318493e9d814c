"""
Domain models for sourceperm.
"""

from sourceperm.domain.models import (
    ApiCapability,
    ApiRule,
    Capability,
    CommandCapability,
    Grade,
    McpToolsResult,
    PermissionPolicy,
    PermissionRow,
    ResolvedCapability,
    Rule,
    RuleType,
    Source,
    SourceType,
    ToolCapability,
    ToolRow,
    WorkspaceSettings,
)

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
