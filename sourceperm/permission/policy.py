"""
Policy loading and normalization.

The on-disk policy record (permissions.json) allows each pattern rule to be
either a bare string or an object with a pattern and an optional comment:

    {
      "blockedTools": ["delete_*", {"pattern": "drop_table", "comment": "never"}],
      "allowedBashPatterns": ["ls *"],
      "allowedApiEndpoints": [{"method": "GET", "path": "/users/*"}],
      "allowedMcpPatterns": ["search_*"]
    }

Both shapes collapse into Rule / ApiRule here. Nothing downstream looks at
the raw shape again.
"""

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from sourceperm.domain.models import ApiRule, PermissionPolicy, Rule
from sourceperm.errors import PolicyLoadError, PolicyNotFoundError, PolicyParseError, SourcePermError
from sourceperm.utils.logging import get_logger

if TYPE_CHECKING:
    from sourceperm.registry.base import SourceRegistry

logger = get_logger(__name__)

# Record key -> PermissionPolicy field, in display order
PATTERN_FIELDS: dict[str, str] = {
    "blockedTools": "blocked_tools",
    "allowedBashPatterns": "allowed_bash_patterns",
    "allowedMcpPatterns": "allowed_mcp_patterns",
}
API_FIELD = ("allowedApiEndpoints", "allowed_api_endpoints")


def _comment(raw: Mapping[str, Any], where: str) -> str | None:
    comment = raw.get("comment")
    if comment is not None and not isinstance(comment, str):
        raise PolicyParseError(f"{where}: comment must be a string")
    return comment


def normalize_rule(raw: Any, where: str = "rule") -> Rule:
    """
    Normalize a pattern rule.

    Args:
        raw: Bare pattern string or {"pattern": ..., "comment": ...}
        where: Location used in error messages

    Returns:
        Rule with comment None when absent

    Raises:
        PolicyParseError: Neither shape, or pattern is not a string
    """
    if isinstance(raw, str):
        return Rule(pattern=raw, comment=None)

    if isinstance(raw, Mapping):
        pattern = raw.get("pattern")
        if not isinstance(pattern, str):
            raise PolicyParseError(f"{where}: pattern must be a string")
        return Rule(pattern=pattern, comment=_comment(raw, where))

    raise PolicyParseError(
        f"{where}: expected a string or an object, got {type(raw).__name__}"
    )


def normalize_api_rule(raw: Any, where: str = "api rule") -> ApiRule:
    """
    Normalize an API endpoint rule.

    Accepts {"method", "path", "comment"?} and, for hand-edited files,
    the display form "GET /users".
    """
    if isinstance(raw, str):
        parts = raw.split(None, 1)
        if len(parts) != 2:
            raise PolicyParseError(f"{where}: expected 'METHOD path', got {raw!r}")
        return ApiRule(method=parts[0], path=parts[1].strip(), comment=None)

    if isinstance(raw, Mapping):
        method = raw.get("method")
        path = raw.get("path")
        if not isinstance(method, str) or not isinstance(path, str):
            raise PolicyParseError(f"{where}: method and path must be strings")
        return ApiRule(method=method, path=path, comment=_comment(raw, where))

    raise PolicyParseError(
        f"{where}: expected an object, got {type(raw).__name__}"
    )


def _rule_list(record: Mapping[str, Any], key: str) -> list[Any]:
    value = record.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise PolicyParseError(f"{key} must be a list, got {type(value).__name__}")
    return value


def parse_policy(raw: Any) -> PermissionPolicy:
    """
    Parse a raw policy record into a PermissionPolicy.

    Missing or null rule lists are empty. Unknown keys are ignored.

    Raises:
        PolicyParseError: Record or one of its rules is malformed
    """
    if not isinstance(raw, Mapping):
        raise PolicyParseError(
            f"Policy record must be an object, got {type(raw).__name__}"
        )

    fields: dict[str, Any] = {}
    for key, field_name in PATTERN_FIELDS.items():
        fields[field_name] = tuple(
            normalize_rule(item, where=f"{key}[{i}]")
            for i, item in enumerate(_rule_list(raw, key))
        )

    key, field_name = API_FIELD
    fields[field_name] = tuple(
        normalize_api_rule(item, where=f"{key}[{i}]")
        for i, item in enumerate(_rule_list(raw, key))
    )

    return PermissionPolicy(**fields)


def _serialize_rule(rule: Rule) -> str | dict[str, Any]:
    if rule.comment is None:
        return rule.pattern
    return {"pattern": rule.pattern, "comment": rule.comment}


def _serialize_api_rule(rule: ApiRule) -> dict[str, Any]:
    data: dict[str, Any] = {"method": rule.method, "path": rule.path}
    if rule.comment is not None:
        data["comment"] = rule.comment
    return data


def serialize_policy(policy: PermissionPolicy) -> dict[str, Any]:
    """Serialize back to the on-disk record shape, preserving rule order."""
    return {
        "blockedTools": [_serialize_rule(r) for r in policy.blocked_tools],
        "allowedBashPatterns": [_serialize_rule(r) for r in policy.allowed_bash_patterns],
        "allowedApiEndpoints": [_serialize_api_rule(r) for r in policy.allowed_api_endpoints],
        "allowedMcpPatterns": [_serialize_rule(r) for r in policy.allowed_mcp_patterns],
    }


class PolicyLoader:
    """
    Loads the policy of one source from the registry.

    The loader has no timeout; it fails as soon as the registry fails.
    """

    def __init__(self, registry: "SourceRegistry", workspace_id: str) -> None:
        self.registry = registry
        self.workspace_id = workspace_id

    async def load(self, slug: str) -> PermissionPolicy:
        """
        Load and normalize the policy for a source.

        Raises:
            PolicyNotFoundError: No policy file for the slug
            PolicyParseError: Malformed record
            PolicyLoadError: Registry failed to read the record
        """
        try:
            raw = await self.registry.get_source_permissions_config(
                self.workspace_id, slug
            )
        except SourcePermError:
            raise
        except ValueError as e:
            # Undecodable or invalid JSON in a user-edited file
            raise PolicyParseError(f"Unreadable permissions for {slug}: {e}") from e
        except OSError as e:
            raise PolicyLoadError(f"Failed to read permissions for {slug}: {e}") from e

        if raw is None:
            raise PolicyNotFoundError(f"No permissions file for source {slug}")

        policy = parse_policy(raw)
        logger.debug("policy_parsed", slug=slug, rules=policy.rule_count)
        return policy


__all__ = [
    "normalize_rule",
    "normalize_api_rule",
    "parse_policy",
    "serialize_policy",
    "PolicyLoader",
]
