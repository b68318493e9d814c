"""
Permission resolution.

Grades every capability against a policy:

1. blocked if any type-appropriate blocked rule matches (checked first, always wins)
2. allowed if any type-appropriate allow rule matches
3. requires-permission otherwise

Rule order inside a list never changes the outcome.
"""

from collections.abc import Iterable

from sourceperm.domain.models import (
    ApiCapability,
    ApiRule,
    Capability,
    CommandCapability,
    Grade,
    PermissionPolicy,
    ResolvedCapability,
    Rule,
    ToolCapability,
)
from sourceperm.permission.matcher import glob_match, method_match


def _any_pattern(rules: Iterable[Rule], value: str) -> bool:
    return any(glob_match(rule.pattern, value) for rule in rules)


def _any_endpoint(rules: Iterable[ApiRule], method: str, path: str) -> bool:
    return any(
        method_match(rule.method, method) and glob_match(rule.path, path)
        for rule in rules
    )


def resolve_one(policy: PermissionPolicy, capability: Capability) -> Grade:
    """Compute the grade of a single capability."""
    if isinstance(capability, ToolCapability):
        if _any_pattern(policy.blocked_tools, capability.name):
            return Grade.BLOCKED
        if _any_pattern(policy.allowed_mcp_patterns, capability.name):
            return Grade.ALLOWED
        return Grade.REQUIRES_PERMISSION

    if isinstance(capability, CommandCapability):
        # Blocked tool names also block a command whose program they match
        if _any_pattern(policy.blocked_tools, capability.program):
            return Grade.BLOCKED
        if _any_pattern(policy.allowed_bash_patterns, capability.command):
            return Grade.ALLOWED
        return Grade.REQUIRES_PERMISSION

    if isinstance(capability, ApiCapability):
        if _any_endpoint(policy.allowed_api_endpoints, capability.method, capability.path):
            return Grade.ALLOWED
        return Grade.REQUIRES_PERMISSION

    raise TypeError(f"Unsupported capability: {type(capability).__name__}")


def resolve(
    policy: PermissionPolicy, capabilities: Iterable[Capability]
) -> list[ResolvedCapability]:
    """Grade every capability, preserving input order."""
    return [
        ResolvedCapability(capability=capability, grade=resolve_one(policy, capability))
        for capability in capabilities
    ]


__all__ = ["resolve", "resolve_one"]
