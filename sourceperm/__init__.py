"""
sourceperm - source capability permission resolution.

Top-level exports for easy access to core functionality.
"""

# Domain models
from sourceperm.domain import (
    ApiCapability,
    ApiRule,
    CommandCapability,
    Grade,
    PermissionPolicy,
    PermissionRow,
    ResolvedCapability,
    Rule,
    RuleType,
    Source,
    SourceType,
    ToolCapability,
    ToolRow,
)

# Permission
from sourceperm.permission import PolicyLoader, normalize_rule, parse_policy, resolve

# Discovery and registry
from sourceperm.discovery import CapabilityDiscoverer
from sourceperm.registry import FileSourceRegistry, SourceChangeFeed, SourceRegistry

# Synchronization
from sourceperm.sync import PermissionsView, SyncController

# Config
from sourceperm.config import settings

__version__ = "0.1.0"

__all__ = [
    # Domain
    "ApiCapability",
    "ApiRule",
    "CommandCapability",
    "Grade",
    "PermissionPolicy",
    "PermissionRow",
    "ResolvedCapability",
    "Rule",
    "RuleType",
    "Source",
    "SourceType",
    "ToolCapability",
    "ToolRow",
    # Permission
    "PolicyLoader",
    "normalize_rule",
    "parse_policy",
    "resolve",
    # Discovery / registry
    "CapabilityDiscoverer",
    "FileSourceRegistry",
    "SourceChangeFeed",
    "SourceRegistry",
    # Sync
    "PermissionsView",
    "SyncController",
    # Config
    "settings",
]
