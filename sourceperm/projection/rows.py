"""
Display rows for permission policies and discovered tools.

Pure transforms: nothing here reads or writes controller state.
"""

from collections.abc import Iterable, Sequence

from sourceperm.domain.models import (
    Grade,
    PermissionPolicy,
    PermissionRow,
    ResolvedCapability,
    Rule,
    RuleType,
    SourceType,
    ToolCapability,
    ToolRow,
)


def _pattern_rows(
    rules: Iterable[Rule], access: str, rule_type: RuleType
) -> list[PermissionRow]:
    return [
        PermissionRow(access=access, type=rule_type, pattern=rule.pattern, comment=rule.comment)
        for rule in rules
    ]


def build_permission_rows(
    policy: PermissionPolicy, source_type: SourceType
) -> list[PermissionRow]:
    """
    Flatten a policy into display rows.

    mcp sources show blocked tools and allowed MCP patterns, both as mcp rows.
    api and local sources show blocked tools, allowed bash patterns and
    allowed API endpoints. Declaration order is kept inside each group.
    """
    if source_type == SourceType.MCP:
        return _pattern_rows(policy.blocked_tools, "blocked", RuleType.MCP) + _pattern_rows(
            policy.allowed_mcp_patterns, "allowed", RuleType.MCP
        )

    rows = _pattern_rows(policy.blocked_tools, "blocked", RuleType.TOOL)
    rows += _pattern_rows(policy.allowed_bash_patterns, "allowed", RuleType.BASH)
    rows += [
        PermissionRow(access="allowed", type=RuleType.API, pattern=rule.display, comment=rule.comment)
        for rule in policy.allowed_api_endpoints
    ]
    return rows


def group_rows(rows: Iterable[PermissionRow]) -> dict[RuleType, list[PermissionRow]]:
    """Group rows by rule type, in first-seen order."""
    grouped: dict[RuleType, list[PermissionRow]] = {}
    for row in rows:
        grouped.setdefault(row.type, []).append(row)
    return grouped


def build_tool_rows(resolved: Sequence[ResolvedCapability]) -> list[ToolRow]:
    """One row per resolved tool; blocked stays distinct from requires-permission."""
    return [
        ToolRow(
            name=item.capability.name,
            description=item.capability.description,
            permission=item.grade,
        )
        for item in resolved
        if isinstance(item.capability, ToolCapability)
    ]


def count_grades(resolved: Iterable[ResolvedCapability]) -> dict[Grade, int]:
    counts = {grade: 0 for grade in Grade}
    for item in resolved:
        counts[item.grade] += 1
    return counts


__all__ = ["build_permission_rows", "group_rows", "build_tool_rows", "count_grades"]
